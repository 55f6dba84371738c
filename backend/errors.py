"""
Error taxonomy for Region Remote.

ParseError and DriftError are absorbed locally by the tracking loop.
ValidationError is raised to whoever loads a region catalog.
CommandError is surfaced to observers as a non-fatal warning.
"""


class RegionRemoteError(Exception):
    """Base class for all Region Remote errors."""


class ParseError(RegionRemoteError):
    """A transport snapshot could not be parsed."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class ValidationError(RegionRemoteError):
    """A region catalog is unsorted, overlapping or otherwise invalid."""


class CommandError(RegionRemoteError):
    """The transport rejected or timed out a command."""

    def __init__(self, command: str, message: str):
        super().__init__(f"{command}: {message}")
        self.command = command


class DriftError(RegionRemoteError):
    """Predicted and authoritative positions diverged beyond tolerance."""

    def __init__(self, predicted: float, actual: float, tolerance: float):
        super().__init__(
            f"drift {actual - predicted:+.3f}s exceeds {tolerance:.3f}s"
        )
        self.predicted = predicted
        self.actual = actual
        self.tolerance = tolerance
