"""Tests for the generation driver and its failure scopes."""

import io
import re

import pytest

from conftest import ScriptedEngine, read_log
from nanodet.broadcast import LogBroadcaster
from nanodet.driver import GenerationDriver, StopReason, iter_prompt_lines
from nanodet.errors import ConfigError
from nanodet.hashing import HashCategory, HashLedger, format_score_line, hash_of_hashes, sha256_hex

RESPONSES = {"hello": [5, 6], "world": [7]}


def run_driver(engine, config, log):
    ledger = HashLedger()
    summary = GenerationDriver(engine, config, ledger, log).run()
    return ledger, summary


class TestPromptLines:
    def test_skips_empty_lines_and_keeps_order(self, write_prompts):
        path = write_prompts("first\n\n\nsecond\n\nthird")
        assert list(iter_prompt_lines(path)) == ["first", "second", "third"]

    def test_only_newline_is_stripped(self, write_prompts):
        """Carriage returns and surrounding spaces are part of the prompt bytes."""
        path = write_prompts("  spaced  \nwindows\r\n")
        assert list(iter_prompt_lines(path)) == ["  spaced  ", "windows\r"]

    def test_missing_file_is_config_error(self, tmp_path):
        with pytest.raises(ConfigError):
            list(iter_prompt_lines(str(tmp_path / "nope.txt")))

    def test_undecodable_bytes_are_kept(self, tmp_path):
        path = tmp_path / "latin1.txt"
        path.write_bytes(b"caf\xe9\nok\n")
        lines = list(iter_prompt_lines(str(path)))
        assert lines[1] == "ok"
        assert lines[0].encode("utf-8", "surrogateescape") == b"caf\xe9"


class TestSingleRun:
    def test_logs_prompt_response_and_scores(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\nworld\n"))
        ledger, summary = run_driver(ScriptedEngine(RESPONSES), config, log)

        text = read_log(log)
        assert "== Iteration 1 of 1 ==\n" in text
        assert "Prompt: hello\n\nResponse: t5 t6 \nLogits: 5:0.250000 6:-0.500000 \n\n" in text
        assert "Prompt: world\n\nResponse: t7 \nLogits: 7:0.750000 \n\n" in text
        assert len(ledger) == 2
        assert summary.lines_hashed == 2
        assert summary.lines_lost == 0

    def test_line_digests_cover_raw_text(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\n"))
        ledger, _ = run_driver(ScriptedEngine(RESPONSES), config, log)

        assert ledger.digests(HashCategory.PROMPT) == [sha256_hex("hello")]
        assert ledger.digests(HashCategory.RESPONSE) == [sha256_hex("t5 t6 ")]
        score_line = format_score_line([(5, 0.25), (6, -0.5)])
        assert ledger.digests(HashCategory.SCORES) == [sha256_hex(score_line)]

        text = read_log(log)
        assert f"Prompt Hash: {sha256_hex('hello')}\n" in text
        assert f"Logits Hash: {sha256_hex(score_line)}\n" in text

    def test_final_hashes_are_logged_last(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\nworld\n"))
        ledger, summary = run_driver(ScriptedEngine(RESPONSES), config, log)

        lines = read_log(log).rstrip("\n").split("\n")
        assert lines[-3:] == [
            f"Final Prompt Hash-of-Hashes: {summary.finals[HashCategory.PROMPT]}",
            f"Final Response Hash-of-Hashes: {summary.finals[HashCategory.RESPONSE]}",
            f"Final Logits Hash-of-Hashes: {summary.finals[HashCategory.SCORES]}",
        ]

    def test_blank_lines_produce_no_records(self, write_prompts, make_config, log):
        config = make_config(write_prompts("\nhello\n\n\nworld\n\n"))
        ledger, _ = run_driver(ScriptedEngine(RESPONSES), config, log)

        assert ledger.digests(HashCategory.PROMPT) == [sha256_hex("hello"), sha256_hex("world")]

    def test_token_stream_goes_to_console_only(self, write_prompts, make_config, log, console):
        config = make_config(write_prompts("hello\n"))
        run_driver(ScriptedEngine(RESPONSES), config, log)

        stdout, _ = console
        assert "t5 t6 \n[Terminated: EOS token.]\n" in stdout.getvalue()
        assert "[Terminated: EOS token.]" not in read_log(log)


class TestGenerationLimits:
    def test_n_predict_caps_tokens(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\n"), n_predict=1)
        engine = ScriptedEngine(RESPONSES)
        driver = GenerationDriver(engine, config, HashLedger(), log)
        engine.reset()
        engine.decode(engine.tokenize("hello"))

        result = driver.generate()

        assert result.text == "t5 "
        assert result.scores == [(5, 0.25)]
        assert result.stop_reason is StopReason.LENGTH

    def test_eos_stops_generation(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\n"))
        engine = ScriptedEngine(RESPONSES)
        driver = GenerationDriver(engine, config, HashLedger(), log)
        engine.reset()
        engine.decode(engine.tokenize("hello"))

        result = driver.generate()

        assert result.n_tokens == 2
        assert result.stop_reason is StopReason.EOS

    def test_zero_n_predict_yields_empty_response(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\n"), n_predict=0)
        ledger, _ = run_driver(ScriptedEngine(RESPONSES), config, log)

        assert ledger.digests(HashCategory.RESPONSE) == [sha256_hex("")]
        assert "Logits: \n\n" in read_log(log)


class TestFailureScopes:
    def test_tokenize_failure_skips_line(self, write_prompts, make_config, log, console):
        config = make_config(write_prompts("hello\nbroken\nworld\n"))
        engine = ScriptedEngine(RESPONSES, tokenize_fail={"broken"})
        ledger, summary = run_driver(engine, config, log)

        assert ledger.digests(HashCategory.PROMPT) == [sha256_hex("hello"), sha256_hex("world")]
        assert summary.lines_lost == 1
        _, stderr = console
        assert "failed to tokenize 'broken'" in stderr.getvalue()

    def test_prime_failure_abandons_iteration_only(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\nhuge\nworld\n"), repeat=2)
        engine = ScriptedEngine(RESPONSES, prime_fail={"huge"})
        ledger, summary = run_driver(engine, config, log)

        # "world" is never reached; both iterations still run
        assert ledger.digests(HashCategory.PROMPT) == [sha256_hex("hello")] * 2
        assert [it.aborted for it in summary.iterations] == [True, True]
        assert summary.iterations_aborted == 2
        assert "Error: decode of line prompt failed" in read_log(log)

    def test_decode_failure_keeps_partial_output(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\n"))
        engine = ScriptedEngine(RESPONSES, decode_fail_at=2)
        ledger, summary = run_driver(engine, config, log)

        # second token's text is kept, its score is not
        assert ledger.digests(HashCategory.RESPONSE) == [sha256_hex("t5 t6 ")]
        assert ledger.digests(HashCategory.SCORES) == [sha256_hex(format_score_line([(5, 0.25)]))]
        assert summary.lines_hashed == 1
        assert "Error: decode failed while generating" in read_log(log)

    def test_detokenize_failure_ends_loop_but_line_is_hashed(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\nworld\n"))
        engine = ScriptedEngine(RESPONSES, detok_fail_at=2)
        ledger, summary = run_driver(engine, config, log)

        assert ledger.digests(HashCategory.RESPONSE) == [sha256_hex("t5 "), sha256_hex("t7 ")]
        assert summary.lines_hashed == 2

    def test_sampling_failure_keeps_partial_output(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\nworld\n"))
        engine = ScriptedEngine(RESPONSES, sample_fail_at=2)
        ledger, summary = run_driver(engine, config, log)

        assert ledger.digests(HashCategory.RESPONSE) == [sha256_hex("t5 "), sha256_hex("t7 ")]
        assert ledger.digests(HashCategory.SCORES)[0] == sha256_hex(format_score_line([(5, 0.25)]))
        assert summary.lines_hashed == 2
        text = read_log(log)
        assert "Error: sampling failed" in text
        assert "Final Logits Hash-of-Hashes: " in text

    def test_non_utf8_prompt_line_is_hashed_as_raw_bytes(self, tmp_path, make_config, log):
        path = tmp_path / "prompts.txt"
        path.write_bytes(b"hello\ncaf\xe9\nworld\n")
        ledger, summary = run_driver(ScriptedEngine(RESPONSES), make_config(str(path)), log)

        assert ledger.digests(HashCategory.PROMPT) == [
            sha256_hex(b"hello"),
            sha256_hex(b"caf\xe9"),
            sha256_hex(b"world"),
        ]
        assert summary.lines_hashed == 3
        text = read_log(log)
        assert "Prompt: caf\ufffd\n\n" in text
        assert "Final Prompt Hash-of-Hashes: " in text


class TestReproducibility:
    def test_repeat_produces_pairwise_identical_records(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\nworld\n"), repeat=3)
        ledger, summary = run_driver(ScriptedEngine(RESPONSES), config, log)

        for category in HashCategory:
            digests = ledger.digests(category)
            assert len(digests) == 6
            assert digests[0:2] == digests[2:4] == digests[4:6]
        assert [it.index for it in summary.iterations] == [1, 2, 3]

    def test_two_runs_give_identical_headlines(self, tmp_path, write_prompts, make_config):
        config = make_config(write_prompts("hello\nworld\n"))
        finals = []
        for name in ("a.txt", "b.txt"):
            with LogBroadcaster(str(tmp_path / name), stdout=io.StringIO(), stderr=io.StringIO()) as log:
                _, summary = run_driver(ScriptedEngine(RESPONSES), config, log)
            finals.append(summary.finals)
        assert finals[0] == finals[1]

    def test_one_character_change_moves_response_headline_only(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\nworld\n"), repeat=2)
        _, baseline = run_driver(ScriptedEngine(RESPONSES), config, log)
        # line 3 == iteration 2, "hello"
        ledger, altered = run_driver(ScriptedEngine(RESPONSES, alter_line=3), config, log)

        responses = ledger.digests(HashCategory.RESPONSE)
        assert responses[0] != responses[2]
        assert responses[1] == responses[3]
        assert altered.finals[HashCategory.RESPONSE] != baseline.finals[HashCategory.RESPONSE]
        assert altered.finals[HashCategory.PROMPT] == baseline.finals[HashCategory.PROMPT]
        assert altered.finals[HashCategory.SCORES] == baseline.finals[HashCategory.SCORES]

    def test_headline_recomputed_from_logged_digests(self, write_prompts, make_config, log):
        config = make_config(write_prompts("hello\nworld\n"), repeat=2)
        _, summary = run_driver(ScriptedEngine(RESPONSES), config, log)

        text = read_log(log)
        for category in HashCategory:
            logged = re.findall(rf"^{category.label} Hash: ([0-9a-f]{{64}})$", text, flags=re.M)
            assert len(logged) == 4
            assert hash_of_hashes(logged) == summary.finals[category]
