import os
import sys
from dataclasses import dataclass, field

from nanodet.errors import ConfigError
from nanodet.sampling_params import SamplingParams

DEFAULT_OUTPUT_PATH = "determinism_results.txt"


@dataclass(frozen=True)
class EngineConfig:
    """Everything the inference engine needs; owned by the engine side.

    model: local directory or HF repo id.
    prompt_file: plain text, one prompt per non-empty line.
    n_predict: max new tokens per line, negative means no limit.
    """

    model: str
    prompt_file: str
    n_batch: int = 2048
    n_predict: int = -1
    sampling: SamplingParams = field(default_factory=SamplingParams)
    device: str = "cpu"
    dtype: str = "fp32"
    trust_remote_code: bool = False

    def __post_init__(self) -> None:
        if not self.model:
            raise ConfigError("a model path is required (-m/--model)")
        if not self.prompt_file:
            raise ConfigError("must pass --file=<filename> for multi-line input")
        if not os.path.isfile(self.prompt_file):
            raise ConfigError(f"cannot open {self.prompt_file}")
        if self.n_batch < 1:
            raise ConfigError(f"batch size must be positive, got {self.n_batch}")

    @property
    def max_new_tokens(self) -> int:
        return sys.maxsize if self.n_predict < 0 else self.n_predict

    def summary(self) -> str:
        """Parameter block written at the top of every results file."""
        return (
            "== Determinism Test Parameters ==\n"
            f"model       : {self.model}\n"
            f"n_batch     : {self.n_batch}\n"
            f"n_predict   : {self.n_predict}\n"
            f"seed        : {self.sampling.seed}\n"
            f"temperature : {self.sampling.temperature}\n"
            "----------------------------------\n\n"
        )


@dataclass(frozen=True)
class RunConfig:
    """Harness-level run settings plus the engine blob. Immutable once parsed."""

    engine: EngineConfig
    output_path: str = DEFAULT_OUTPUT_PATH
    repeat: int = 1

    def __post_init__(self) -> None:
        if self.repeat < 1:
            raise ConfigError(f"--repeat must be a positive integer, got {self.repeat}")
        if not self.output_path:
            raise ConfigError("-o requires a filename")
