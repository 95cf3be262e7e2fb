"""Command-line handling.

The harness owns exactly two flags (`-o` and `--repeat`). They are pulled out
of argv first; whatever is left is parsed by the engine's own parser.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Sequence

from nanodet.config import DEFAULT_OUTPUT_PATH, EngineConfig, RunConfig
from nanodet.errors import ConfigError
from nanodet.sampling_params import SamplingParams
from nanodet.utils import default_device

OUTPUT_FLAG = "-o"
REPEAT_FLAG = "--repeat"


@dataclass(frozen=True)
class HarnessArgs:
    output_path: str = DEFAULT_OUTPUT_PATH
    repeat: int = 1


def split_harness_args(argv: Sequence[str]) -> tuple[HarnessArgs, list[str]]:
    """Remove `-o <path>` and `--repeat <int>` from argv, keeping the rest in order.

    argv excludes the program name. Raises ConfigError when a flag has no
    value after it or the repeat count is not an integer.
    """
    output_path = DEFAULT_OUTPUT_PATH
    repeat = 1
    remaining: list[str] = []

    args = list(argv)
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == OUTPUT_FLAG:
            if i + 1 >= len(args):
                raise ConfigError("-o requires a filename")
            output_path = args[i + 1]
            i += 2
        elif arg == REPEAT_FLAG:
            if i + 1 >= len(args):
                raise ConfigError("--repeat requires an integer")
            try:
                repeat = int(args[i + 1])
            except ValueError:
                raise ConfigError("--repeat must be followed by an integer") from None
            i += 2
        else:
            remaining.append(arg)
            i += 1

    return HarnessArgs(output_path=output_path, repeat=repeat), remaining


def build_engine_parser() -> argparse.ArgumentParser:
    """Parser for the engine-owned flags (everything except -o/--repeat)."""

    parser = argparse.ArgumentParser(
        prog="nanodet",
        description="Run every prompt of a file through the engine and hash the outputs. "
        "Harness flags: -o <file> (default determinism_results.txt), --repeat <n> (default 1).",
    )
    parser.add_argument("-m", "--model", required=True, help="HF repo id or local model directory")
    parser.add_argument(
        "-f",
        "--file",
        dest="prompt_file",
        default="",
        help="Prompt file, one prompt per non-empty line",
    )
    parser.add_argument("-b", "--batch-size", type=int, default=2048, help="Max tokens per decode call")
    parser.add_argument(
        "-n",
        "--n-predict",
        type=int,
        default=-1,
        help="Max new tokens per prompt (-1 = until end of generation or context full)",
    )
    parser.add_argument("-s", "--seed", type=int, default=1234, help="Sampler seed")
    parser.add_argument("--temp", type=float, default=0.8, help="Sampling temperature (<= 0 is greedy)")
    parser.add_argument("--top-k", type=int, default=40, help="Top-k filter (<= 0 disables)")
    parser.add_argument("--top-p", type=float, default=0.95, help="Nucleus filter (1.0 disables)")
    parser.add_argument("--device", default=default_device(), help="cpu, cuda or cuda:N")
    parser.add_argument("--dtype", default="fp32", choices=["bf16", "fp16", "fp32"], help="Model dtype")
    parser.add_argument("--trust-remote-code", action="store_true", help="Forwarded to HF loaders")
    return parser


def parse_run_config(argv: Sequence[str]) -> RunConfig:
    """Full argv (without program name) -> validated RunConfig."""

    harness, engine_argv = split_harness_args(argv)
    args = build_engine_parser().parse_args(engine_argv)

    try:
        sampling = SamplingParams(
            seed=args.seed,
            temperature=args.temp,
            top_k=args.top_k,
            top_p=args.top_p,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    engine = EngineConfig(
        model=args.model,
        prompt_file=args.prompt_file,
        n_batch=args.batch_size,
        n_predict=args.n_predict,
        sampling=sampling,
        device=args.device,
        dtype=args.dtype,
        trust_remote_code=args.trust_remote_code,
    )
    return RunConfig(engine=engine, output_path=harness.output_path, repeat=harness.repeat)
