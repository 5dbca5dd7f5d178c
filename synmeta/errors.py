"""
Exception hierarchy for the synmeta pipeline.

All errors carry enough context (path, row, offending value) to diagnose the
problem without re-running with extra logging.
"""

from typing import Any, Optional


class SynmetaError(Exception):
    """Base exception for pipeline errors."""

    pass


class FileAccessError(SynmetaError, OSError):
    """Raised when a file is missing, is not a regular file, or cannot be read or written."""

    pass


class ParseError(SynmetaError, ValueError):
    """Raised when a delimited table is malformed."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        line: Optional[int] = None,
    ) -> None:
        self.path = path
        self.line = line
        location = ""
        if path is not None:
            location = f"{path}"
            if line is not None:
                location += f":{line}"
            location += ": "
        super().__init__(f"{location}{message}")


class UnknownLevelError(SynmetaError, ValueError):
    """Raised when a value is not part of the declared category levels."""

    def __init__(self, value: Any, row: Any, column: str) -> None:
        self.value = value
        self.row = row
        self.column = column
        super().__init__(
            f"Value {value!r} in column '{column}' (row {row}) is not a declared level"
        )


class AmbiguousReshapeError(SynmetaError, ValueError):
    """Raised when a long-to-wide reshape key is not unique."""

    pass


class UnmappedCoefficientError(SynmetaError, LookupError):
    """Raised when a model coefficient has no display label."""

    def __init__(self, names: list[str]) -> None:
        self.names = list(names)
        super().__init__(
            f"No display label for model coefficient(s): {', '.join(self.names)}"
        )

    def __str__(self) -> str:
        return self.args[0]


class ChartFinalizedError(SynmetaError, RuntimeError):
    """Raised when a chart is modified after it has been rendered."""

    pass
