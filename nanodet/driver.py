"""Generation loop: every prompt line, every iteration, one token at a time.

Failure scopes:
- tokenize error: the line is skipped (no hashes), the iteration goes on
- prompt decode error: the rest of the current iteration is abandoned
- sample / detokenize / decode error while generating: the line keeps its partial
  output and is still logged and hashed
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterator

from nanodet.engine.base import DecodeError, DetokenizeError, InferenceEngine, SampleError, TokenizeError
from nanodet.errors import ConfigError
from nanodet.hashing import HashCategory, HashLedger, format_score_line, render_final

if TYPE_CHECKING:
    from nanodet.broadcast import LogBroadcaster
    from nanodet.config import RunConfig


class StopReason(Enum):
    EOS = "eos"
    LENGTH = "length"
    DECODE_ERROR = "decode_error"
    DETOKENIZE_ERROR = "detokenize_error"
    SAMPLE_ERROR = "sample_error"


@dataclass
class GenerationResult:
    text: str = ""
    scores: list[tuple[int, float]] = field(default_factory=list)
    n_tokens: int = 0
    stop_reason: StopReason = StopReason.LENGTH

    @property
    def score_line(self) -> str:
        return format_score_line(self.scores)


@dataclass
class IterationStats:
    index: int
    lines_hashed: int = 0
    lines_lost: int = 0
    n_tokens: int = 0
    elapsed_s: float = 0.0
    aborted: bool = False

    @property
    def tokens_per_second(self) -> float:
        return self.n_tokens / self.elapsed_s if self.elapsed_s > 0 else 0.0


@dataclass
class RunSummary:
    iterations: list[IterationStats] = field(default_factory=list)
    finals: dict[HashCategory, str] = field(default_factory=dict)

    @property
    def lines_hashed(self) -> int:
        return sum(it.lines_hashed for it in self.iterations)

    @property
    def lines_lost(self) -> int:
        return sum(it.lines_lost for it in self.iterations)

    @property
    def iterations_aborted(self) -> int:
        return sum(1 for it in self.iterations if it.aborted)


def iter_prompt_lines(path: str) -> Iterator[str]:
    """Yield non-empty lines with only the trailing "\n" removed.

    The file is read as bytes. Lines are decoded with "surrogateescape" so
    bytes that are not valid UTF-8 survive into the hashed prompt unchanged.
    """
    try:
        f = open(path, "rb")
    except OSError as exc:
        raise ConfigError(f"cannot open {path}") from exc
    with f:
        for raw in f:
            line = raw[:-1] if raw.endswith(b"\n") else raw
            if line:
                yield line.decode("utf-8", "surrogateescape")


def printable(line: str) -> str:
    """`line` with escaped undecodable bytes shown as U+FFFD."""
    return line.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


class GenerationDriver:
    """Runs the prompt file `config.repeat` times and feeds the hash ledger."""

    def __init__(self, engine: InferenceEngine, config: RunConfig, ledger: HashLedger, log: LogBroadcaster):
        self.engine = engine
        self.config = config
        self.ledger = ledger
        self.log = log

    def run(self) -> RunSummary:
        summary = RunSummary()
        for index in range(self.config.repeat):
            summary.iterations.append(self.run_iteration(index))

        self.log.info(
            f"== Summary: {len(summary.iterations)} iteration(s), {summary.iterations_aborted} aborted, "
            f"{summary.lines_hashed} line(s) hashed, {summary.lines_lost} line(s) lost ==\n\n"
        )
        summary.finals = self.aggregate()
        return summary

    def run_iteration(self, index: int) -> IterationStats:
        self.log.info(f"== Iteration {index + 1} of {self.config.repeat} ==\n")
        stats = IterationStats(index=index + 1)
        t_start = time.perf_counter()

        for line in iter_prompt_lines(self.config.engine.prompt_file):
            text = printable(line)
            self.log.info(f"Prompt: {text}\n\n")
            self.engine.reset()

            try:
                tokens = self.engine.tokenize(text)
            except TokenizeError as exc:
                self.log.error(f"Error: {exc}\n")
                stats.lines_lost += 1
                continue

            try:
                self.engine.decode(tokens)
            except DecodeError as exc:
                self.log.error(f"Error: decode of line prompt failed: {exc}\n")
                stats.lines_lost += 1
                stats.aborted = True
                break

            result = self.generate()
            stats.n_tokens += result.n_tokens
            self.record_line(line, result)
            stats.lines_hashed += 1

        stats.elapsed_s = time.perf_counter() - t_start
        self.log.info(
            f"\ndecoded {stats.n_tokens} tokens in {stats.elapsed_s:.2f} s, "
            f"speed: {stats.tokens_per_second:.2f} t/s\n"
        )
        return stats

    def generate(self) -> GenerationResult:
        """Sample until end of generation or the token budget; prompt already decoded."""
        engine = self.engine
        result = GenerationResult()

        for _ in range(self.config.engine.max_new_tokens):
            try:
                token = engine.sample()
            except SampleError as exc:
                self.log.error(f"Error: sampling failed: {exc}\n")
                result.stop_reason = StopReason.SAMPLE_ERROR
                break
            if engine.is_end_of_generation(token):
                result.stop_reason = StopReason.EOS
                break

            try:
                piece = engine.token_to_text(token)
            except DetokenizeError as exc:
                self.log.error(f"Error: {exc}\n")
                result.stop_reason = StopReason.DETOKENIZE_ERROR
                break
            result.text += piece
            result.n_tokens += 1
            self.log.echo(piece)

            try:
                engine.decode([token])
            except DecodeError as exc:
                self.log.error(f"Error: decode failed while generating: {exc}\n")
                result.stop_reason = StopReason.DECODE_ERROR
                break

            # score of the sampled id, read right after it was decoded
            scores = engine.current_scores()
            result.scores.append((token, float(scores[token])))

        try:
            tail = engine.flush_text()
        except DetokenizeError as exc:
            self.log.error(f"Error: {exc}\n")
            tail = ""
        if tail:
            result.text += tail
            self.log.echo(tail)
        if result.stop_reason is StopReason.EOS:
            self.log.echo("\n[Terminated: EOS token.]\n")
        return result

    def record_line(self, prompt: str, result: GenerationResult) -> None:
        score_line = result.score_line
        self.log.info(f"Response: {result.text}\n")
        self.log.info(score_line)
        for record in self.ledger.record(prompt, result.text, score_line):
            self.log.info(record.render())

    def aggregate(self) -> dict[HashCategory, str]:
        finals = self.ledger.finals()
        for category, digest in finals.items():
            self.log.info(render_final(category, digest))
        return finals
