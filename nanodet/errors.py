"""Exception types shared across the harness."""


class HarnessError(Exception):
    """Base class for every error raised by nanodet itself."""


class ConfigError(HarnessError):
    """Fatal configuration problem detected before generation starts.

    Bad flag values, an unopenable output or prompt file and a model that
    cannot be loaded all end up here; the CLI reports them on stderr and
    exits with status 1.
    """
