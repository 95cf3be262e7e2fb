"""Pick an output file name that never clobbers an earlier results file."""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

from nanodet.errors import ConfigError

if TYPE_CHECKING:
    from nanodet.broadcast import LogBroadcaster

MAX_SUFFIX_ATTEMPTS = 10_000


def resolve_output_path(
    path: str,
    *,
    max_attempts: int = MAX_SUFFIX_ATTEMPTS,
    log: LogBroadcaster | None = None,
) -> str:
    """Return `path` if it is free, else the first free `path.N` for N = 1, 2, ...

    Existing files are never touched. Gives up with ConfigError after
    `max_attempts` candidates (e.g. a directory full of stale results).
    """
    if not os.path.exists(path):
        return path

    for counter in range(1, max_attempts + 1):
        candidate = f"{path}.{counter}"
        if not os.path.exists(candidate):
            notice = f'File "{path}" already exists.\nUsing new output file: {candidate}\n'
            if log is not None:
                log.warning(notice)
            else:
                sys.stderr.write(notice)
            return candidate

    raise ConfigError(
        f'no free output name for "{path}" after {max_attempts} attempts'
    )
