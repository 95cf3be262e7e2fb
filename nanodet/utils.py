"""Utility helpers for deterministic engine setup."""

from __future__ import annotations

import random

import torch


def parse_dtype(dtype_name: str) -> torch.dtype:
    """Map CLI dtype string to a torch dtype."""

    lowered = dtype_name.lower()
    if lowered in ("fp16", "float16"):
        return torch.float16
    if lowered in ("bf16", "bfloat16"):
        return torch.bfloat16
    if lowered in ("fp32", "float32"):
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype_name}")


def default_device() -> str:
    return "cuda" if torch.cuda.is_available() else "cpu"


def set_seed(seed: int) -> None:
    """Seed Python and torch before the model is built.

    Weight init of any freshly created module and CUDA kernels that draw
    random numbers both depend on these, so they are set once per run.
    """

    random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
