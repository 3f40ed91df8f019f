"""Exceptions raised by sizefit."""


class SizefitError(Exception):
    """Base class for sizefit errors."""


class InvalidTargetError(SizefitError, ValueError):
    """Target size is not a positive integer number of bytes."""


class SearchCancelled(SizefitError):
    """A target-size search was cancelled between probes."""

    def __init__(self, iterations: int):
        super().__init__(f"Search cancelled after {iterations} probe(s)")
        self.iterations = iterations


class UnsupportedFileError(SizefitError):
    """Input file has the wrong type or exceeds the size limit."""
