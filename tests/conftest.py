"""Shared fixtures: a scripted stand-in engine and a captured broadcaster."""

import io

import pytest

from nanodet.broadcast import LogBroadcaster
from nanodet.config import EngineConfig, RunConfig
from nanodet.engine.base import DecodeError, DetokenizeError, InferenceEngine, SampleError, TokenizeError


class ScriptedEngine(InferenceEngine):
    """Engine stub that replays a fixed token list per prompt.

    Args:
        responses: prompt text -> token ids emitted before end of generation
        tokenize_fail: prompts whose tokenization fails
        prime_fail: prompts whose prompt decode fails
        decode_fail_at: n-th generation decode (1-based, per line) that fails
        detok_fail_at: n-th token (1-based, per line) whose text conversion fails
        sample_fail_at: n-th sample call (1-based, per line) that fails
        alter_line: global line number (1-based, counted by reset()) whose first
            piece is upper-cased, simulating a one-character divergence
    """

    EOS = 2

    def __init__(
        self,
        responses,
        *,
        tokenize_fail=(),
        prime_fail=(),
        decode_fail_at=None,
        detok_fail_at=None,
        sample_fail_at=None,
        alter_line=None,
    ):
        self.responses = responses
        self.tokenize_fail = set(tokenize_fail)
        self.prime_fail = set(prime_fail)
        self.decode_fail_at = decode_fail_at
        self.detok_fail_at = detok_fail_at
        self.sample_fail_at = sample_fail_at
        self.alter_line = alter_line
        self.resets = 0
        self.closed = False
        self.perf_printed = False
        self.reset()
        self.resets = 0

    def reset(self):
        self.resets += 1
        self._prompt = None
        self._pending = []
        self._primed = False
        self._step = 0
        self._last = None
        self._samples = 0

    def tokenize(self, text):
        if text in self.tokenize_fail:
            raise TokenizeError(f"failed to tokenize {text!r}")
        self._prompt = text
        return [ord(c) for c in text]

    def decode(self, tokens):
        tokens = list(tokens)
        if not self._primed:
            if self._prompt in self.prime_fail:
                raise DecodeError("prompt does not fit")
            self._pending = list(self.responses.get(self._prompt, []))
            self._primed = True
        else:
            self._step += 1
            if self.decode_fail_at is not None and self._step == self.decode_fail_at:
                raise DecodeError("kv cache full")
        self._last = tokens[-1]

    def sample(self):
        self._samples += 1
        if self.sample_fail_at is not None and self._samples == self.sample_fail_at:
            raise SampleError("probability tensor contains either inf, nan or element < 0")
        return self._pending.pop(0) if self._pending else self.EOS

    def is_end_of_generation(self, token):
        return token == self.EOS

    def token_to_text(self, token):
        if self.detok_fail_at is not None and self._step + 1 == self.detok_fail_at:
            raise DetokenizeError(f"convert token {token} to piece")
        text = f"t{token} "
        if self.alter_line == self.resets and self._step == 0:
            text = text.upper()
        return text

    def current_scores(self):
        return {self._last: self._last * 0.25 - self._step}

    def print_perf(self, log):
        self.perf_printed = True
        log.info("perf: scripted engine\n")

    def close(self):
        self.closed = True


@pytest.fixture
def write_prompts(tmp_path):
    """Factory writing a prompt file; returns its path as str."""

    def _write(text, name="prompts.txt"):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def make_config():
    def _make(prompt_file, *, repeat=1, n_predict=-1, output_path="determinism_results.txt"):
        engine = EngineConfig(model="scripted", prompt_file=prompt_file, n_predict=n_predict)
        return RunConfig(engine=engine, output_path=output_path, repeat=repeat)

    return _make


@pytest.fixture
def console():
    return io.StringIO(), io.StringIO()


@pytest.fixture
def log(tmp_path, console):
    stdout, stderr = console
    broadcaster = LogBroadcaster(str(tmp_path / "results.txt"), stdout=stdout, stderr=stderr)
    with broadcaster:
        yield broadcaster


def read_log(log):
    with open(log.path, encoding="utf-8") as f:
        return f.read()
