"""Dual-sink logging: every message goes to the console and to the results file.

One `LogBroadcaster` lives for a whole run. It is built on a private
`logging.Logger` so third-party loggers (the engine's) can be routed
through the same two sinks with `capture()`.
"""

from __future__ import annotations

import itertools
import logging
import sys
from typing import IO

from nanodet.errors import ConfigError

_instance_ids = itertools.count()


class _VerbatimFormatter(logging.Formatter):
    """Writes the message as-is; adds a newline only when one is missing."""

    def __init__(self) -> None:
        super().__init__("%(message)s")

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        if not text.endswith("\n"):
            text += "\n"
        return text


def _below_warning(record: logging.LogRecord) -> bool:
    return record.levelno < logging.WARNING


class LogBroadcaster:
    """Console + file logging channel with an explicit open/close lifecycle.

    Records below WARNING reach the console on stdout, WARNING and above on
    stderr; the file gets everything. Nothing is filtered out.

    Usage:
        with LogBroadcaster("determinism_results.txt") as log:
            log.info("== Iteration 1 of 1 ==\\n")
    """

    def __init__(self, path: str, stdout: IO[str] | None = None, stderr: IO[str] | None = None):
        self.path = path
        self._stdout = stdout
        self._stderr = stderr
        self._logger = logging.getLogger(f"nanodet.run.{next(_instance_ids)}")
        self._logger.propagate = False
        self._logger.setLevel(logging.DEBUG)
        self._handlers: list[logging.Handler] = []
        self._file_handler: logging.FileHandler | None = None
        self._captured: list[logging.Logger] = []
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._file_handler is not None and not self._closed

    def open(self) -> LogBroadcaster:
        if self._closed:
            raise RuntimeError("LogBroadcaster cannot be reopened after close()")
        if self._file_handler is not None:
            return self

        if self._stdout is None:
            self._stdout = sys.stdout
        if self._stderr is None:
            self._stderr = sys.stderr

        try:
            file_handler = logging.FileHandler(self.path, mode="w", encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"cannot open {self.path} for logging: {exc}") from exc

        out_handler = logging.StreamHandler(self._stdout)
        out_handler.addFilter(_below_warning)
        err_handler = logging.StreamHandler(self._stderr)
        err_handler.setLevel(logging.WARNING)

        formatter = _VerbatimFormatter()
        for handler in (out_handler, err_handler, file_handler):
            handler.terminator = ""
            handler.setFormatter(formatter)
            self._logger.addHandler(handler)
            self._handlers.append(handler)
        self._file_handler = file_handler
        return self

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for captured in self._captured:
            for handler in self._handlers:
                captured.removeHandler(handler)
        self._captured.clear()
        for handler in self._handlers:
            handler.flush()
            self._logger.removeHandler(handler)
        if self._file_handler is not None:
            self._file_handler.close()
        self._handlers.clear()

    def __enter__(self) -> LogBroadcaster:
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def capture(self, logger_name: str) -> None:
        """Route another logger (e.g. "transformers") through both sinks until close()."""
        self._require_open()
        logger = logging.getLogger(logger_name)
        for handler in self._handlers:
            logger.addHandler(handler)
        self._captured.append(logger)

    def _require_open(self) -> None:
        if not self.is_open:
            raise RuntimeError("LogBroadcaster used outside of open()/close()")

    def log(self, level: int, message: str) -> None:
        self._require_open()
        self._logger.log(level, message)

    def debug(self, message: str) -> None:
        self.log(logging.DEBUG, message)

    def info(self, message: str) -> None:
        self.log(logging.INFO, message)

    def warning(self, message: str) -> None:
        self.log(logging.WARNING, message)

    def error(self, message: str) -> None:
        self.log(logging.ERROR, message)

    def echo(self, text: str) -> None:
        """Console-only output for the live token stream."""
        self._require_open()
        self._stdout.write(text)
        self._stdout.flush()
