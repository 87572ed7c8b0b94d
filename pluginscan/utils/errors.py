"""Exceptions raised by the plugin scan."""


class PluginScanError(RuntimeError):
    """Base class for errors that stop a scan, an aggregation or a bootstrap."""


class PreconditionError(PluginScanError):
    """Raised when an input or configuration precondition is violated.

    Examples are a missing snapshot, a prior scan whose grid does not match
    the current one, or a run range for which no file could be read. These
    are never retried.
    """


class NullFitResultError(PluginScanError):
    """Raised when the fit engine returns no result at all."""

    def __init__(self, message: str = "fit engine returned no result"):
        super().__init__(message)
