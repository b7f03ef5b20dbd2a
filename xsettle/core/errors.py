"""
Error taxonomy for the settlement engine.

Fatal errors (configuration, invalid deal fields, malformed payloads,
rejected submissions) end a run with exactly one ``error`` event.
``ObservationTimeout`` is non-fatal and is absorbed into step detail.
``StreamAbort`` ends a run silently: the client is gone, nobody is listening.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional


class SettlementEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(SettlementEngineError):
    """Required configuration for the selected mode is missing or invalid."""

    def __init__(self, missing: Iterable[str], message: Optional[str] = None) -> None:
        self.missing: List[str] = list(missing)
        super().__init__(message or f"Missing configuration: {', '.join(self.missing)}")


class InvalidFieldError(SettlementEngineError):
    """A deal field is malformed (bad address, negative or oversized number)."""

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid deal field '{field}': {reason}")


class MalformedPayloadError(SettlementEngineError):
    """An encoded payload or wire object does not have the Deal shape."""


class DealIdMismatchError(MalformedPayloadError):
    """The dealId does not match the hash of the other deal fields."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"dealId mismatch: expected {expected}, got {actual}")


class SettlementError(SettlementEngineError):
    """A settlement step failed; results of earlier steps stand."""

    def __init__(self, step: str, reason: str) -> None:
        self.step = step
        self.reason = reason
        super().__init__(f"{step} failed: {reason}")


class SubmissionError(SettlementError):
    """A chain transaction was rejected or reverted."""


class ObservationTimeout(SettlementEngineError):
    """An expected chain event was not observed within the watch window."""

    def __init__(self, event: str, timeout_ms: int) -> None:
        self.event = event
        self.timeout_ms = timeout_ms
        super().__init__(f"{event} not observed within {timeout_ms} ms")



class StreamAbort(SettlementEngineError):
    """The client disconnected or cancelled the run."""
