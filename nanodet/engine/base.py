"""Contract between the generation driver and an inference backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Sequence

from nanodet.errors import HarnessError

if TYPE_CHECKING:
    from nanodet.broadcast import LogBroadcaster


class EngineError(HarnessError):
    """Base for failures reported by the inference backend."""


class TokenizeError(EngineError):
    pass


class DecodeError(EngineError):
    pass


class DetokenizeError(EngineError):
    pass


class SampleError(EngineError):
    pass


class InferenceEngine(ABC):
    """One loaded model + context + sampler, used strictly sequentially.

    The driver calls, per prompt line: reset, tokenize, decode(prompt), then
    sample / token_to_text / decode([token]) / current_scores until the
    end-of-generation token or the token budget.
    """

    @abstractmethod
    def reset(self) -> None:
        """Start a fresh sequence: clear cached state and re-seed the sampler."""

    @abstractmethod
    def tokenize(self, text: str) -> list[int]:
        """Raises TokenizeError."""

    @abstractmethod
    def decode(self, tokens: Sequence[int]) -> None:
        """Advance model state by `tokens`. Raises DecodeError."""

    @abstractmethod
    def sample(self) -> int:
        """Pick the next token from the current state. Raises SampleError."""

    @abstractmethod
    def is_end_of_generation(self, token: int) -> bool: ...

    @abstractmethod
    def token_to_text(self, token: int) -> str:
        """Raises DetokenizeError."""

    def flush_text(self) -> str:
        """Text still held back by token_to_text() once generation stops."""
        return ""

    @abstractmethod
    def current_scores(self) -> Any:
        """Raw scores of the last decoded position, indexable by token id."""

    def print_perf(self, log: LogBroadcaster) -> None:
        """Dump engine performance counters once at the end of a run."""

    def close(self) -> None:
        """Release model/device handles. Safe to call more than once."""

    def __enter__(self) -> InferenceEngine:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
