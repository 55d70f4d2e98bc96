"""Exception types shared across sheet-aggregator."""

from __future__ import annotations


class AggregatorError(Exception):
    """Base class for every error raised by sheet-aggregator."""


class ConfigurationError(AggregatorError):
    """Invalid options: unknown column, bad header row, malformed range syntax."""

    def __init__(self, message: str, *, sheet: str | None = None, identifier: str | None = None) -> None:
        self.sheet = sheet
        self.identifier = identifier
        details = []
        if sheet is not None:
            details.append(f"sheet {sheet!r}")
        if identifier is not None:
            details.append(f"identifier {identifier!r}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)


class OperationCancelled(AggregatorError):
    """Raised when a cancellation token is set during a long-running operation."""

    def __init__(self, message: str = "Cancelled by user.") -> None:
        super().__init__(message)


class WorkbookReadError(AggregatorError):
    pass


class UnsupportedFormatError(AggregatorError):
    pass


class InvalidStateError(AggregatorError):
    """Workflow step requested from the wrong session state."""
