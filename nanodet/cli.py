"""`nanodet` entry point: parse flags, open the results file, run, hash.

Usage:
    nanodet -m Qwen/Qwen3-0.6B -f prompts.txt -n 64 --temp 0 --repeat 3 -o run_a.txt
"""

from __future__ import annotations

import sys
from typing import Callable, Sequence

from nanodet.args import parse_run_config
from nanodet.broadcast import LogBroadcaster
from nanodet.config import EngineConfig, RunConfig
from nanodet.driver import GenerationDriver, RunSummary
from nanodet.engine.base import InferenceEngine
from nanodet.engine.hf_engine import HFEngine, capture_transformers_logs
from nanodet.errors import ConfigError
from nanodet.hashing import HashLedger
from nanodet.output import resolve_output_path

EngineFactory = Callable[[EngineConfig, LogBroadcaster], InferenceEngine]


def load_engine(config: EngineConfig, log: LogBroadcaster) -> InferenceEngine:
    return HFEngine.from_config(config, log)


def run_harness(
    config: RunConfig,
    output_path: str,
    *,
    engine_factory: EngineFactory | None = None,
) -> RunSummary:
    """Open the broadcaster, load the engine, drive all iterations, emit finals.

    Both the results file and the engine are released on every exit path.
    """
    factory = engine_factory or load_engine
    with LogBroadcaster(output_path) as log, capture_transformers_logs(log):
        with factory(config.engine, log) as engine:
            log.info(config.engine.summary())
            driver = GenerationDriver(engine, config, HashLedger(), log)
            summary = driver.run()
            engine.print_perf(log)
    return summary


def main(argv: Sequence[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    try:
        config = parse_run_config(argv)
        output_path = resolve_output_path(config.output_path)
        print(f"Writing logs to: {output_path}", file=sys.stderr)
        run_harness(config, output_path)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
