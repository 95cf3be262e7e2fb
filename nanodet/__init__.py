"""Determinism harness for causal LM inference: run prompts repeatedly, hash everything."""
from .config import EngineConfig, RunConfig
from .driver import GenerationDriver, GenerationResult
from .hashing import HashCategory, HashLedger, HashRecord
from .sampling_params import SamplingParams

__all__: list[str] = [
    "EngineConfig",
    "GenerationDriver",
    "GenerationResult",
    "HashCategory",
    "HashLedger",
    "HashRecord",
    "RunConfig",
    "SamplingParams",
]
