from dataclasses import dataclass


@dataclass(frozen=True)
class SamplingParams:
    """Knobs handed to the engine's sampler.

    temperature <= 0 selects greedy argmax; top_k <= 0 and top_p >= 1.0
    disable the respective filters.
    """

    seed: int = 1234
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95

    def __post_init__(self) -> None:
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
