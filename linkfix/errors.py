"""
Exception taxonomy for the refactoring engine.

Every condition listed here is fatal: the pipeline does not retry or
recover, the operator fixes the configuration (or the file system) and
re-runs, using the stage snapshots to see how far the run got.

Unresolved references found while building the dependency graph are
deliberately *not* represented here; they are library symbols.
"""


class RefactorError(Exception):
    """Base class for all fatal refactoring errors."""


class ConfigurationError(RefactorError):
    """A configured symbol is missing, or the configuration is malformed."""

    def __init__(self, message: str, symbol: str = ""):
        super().__init__(message)
        self.symbol = symbol


class SourceIOError(RefactorError):
    """A source file could not be read, or an output could not be written."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path
