"""Errors raised by the mirror synchronizer.

Only conditions that stop a whole run are raised out of the engine; per-package
and per-repository problems are recorded in the run report instead.
"""


class MyrepoError(Exception):
    """Base class for all synchronizer errors."""


class ConfigError(MyrepoError):
    """A configuration value could not be interpreted."""


class InventoryError(MyrepoError):
    """Installed packages or repository lists could not be enumerated."""


class CacheBuildError(MyrepoError):
    """No repository inventory could be queried at all."""


class FilenameParseError(MyrepoError, ValueError):
    """A package file name does not follow name-version-release.arch.rpm."""

    def __init__(self, filename: str, reason: str = "unrecognized package file name"):
        super().__init__(f"{reason}: {filename}")
        self.filename = filename
        self.reason = reason
