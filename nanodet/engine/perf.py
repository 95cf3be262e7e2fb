from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nanodet.broadcast import LogBroadcaster


def _ms_per_token(ms: float, n: int) -> float:
    return ms / n if n > 0 else 0.0


def _tokens_per_second(ms: float, n: int) -> float:
    return 1e3 * n / ms if ms > 0 else 0.0


@dataclass
class PerfStats:
    """Wall-clock counters for the engine, split into prompt and generation work."""

    load_ms: float = 0.0
    prompt_ms: float = 0.0
    n_prompt_tokens: int = 0
    eval_ms: float = 0.0
    n_eval_tokens: int = 0

    def __post_init__(self) -> None:
        self._t_start = time.perf_counter()

    def add_prompt(self, n_tokens: int, seconds: float) -> None:
        self.n_prompt_tokens += n_tokens
        self.prompt_ms += seconds * 1e3

    def add_eval(self, n_tokens: int, seconds: float) -> None:
        self.n_eval_tokens += n_tokens
        self.eval_ms += seconds * 1e3

    def render(self) -> str:
        total_ms = (time.perf_counter() - self._t_start) * 1e3
        return (
            f"perf:        load time = {self.load_ms:10.2f} ms\n"
            f"perf: prompt eval time = {self.prompt_ms:10.2f} ms / {self.n_prompt_tokens:5d} tokens "
            f"({_ms_per_token(self.prompt_ms, self.n_prompt_tokens):8.2f} ms per token, "
            f"{_tokens_per_second(self.prompt_ms, self.n_prompt_tokens):8.2f} tokens per second)\n"
            f"perf:        eval time = {self.eval_ms:10.2f} ms / {self.n_eval_tokens:5d} runs   "
            f"({_ms_per_token(self.eval_ms, self.n_eval_tokens):8.2f} ms per token, "
            f"{_tokens_per_second(self.eval_ms, self.n_eval_tokens):8.2f} tokens per second)\n"
            f"perf:       total time = {total_ms:10.2f} ms / {self.n_prompt_tokens + self.n_eval_tokens:5d} tokens\n"
        )

    def dump(self, log: LogBroadcaster) -> None:
        log.info(self.render())
