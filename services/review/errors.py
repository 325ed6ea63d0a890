from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_IDENTIFIER = "InvalidIdentifier"
    INVALID_EXPERT = "InvalidExpert"
    MISSING_DECISION = "MissingDecision"
    MISSING_PREDICTION = "MissingPrediction"
    SCAN_NOT_FOUND = "ScanNotFound"
    RECORD_NOT_FOUND = "RecordNotFound"
    INELIGIBLE = "Ineligible"
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    LEDGER_WRITE_FAILED = "LedgerWriteFailed"
    SCAN_UPDATE_FAILED = "ScanUpdateFailed"
    NOT_OWNER = "NotOwner"
    BUSY = "Busy"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE

    @property
    def durable_side_effect(self) -> bool:
        """True when the ledger was written but the scan row was not."""
        return self is ErrorKind.SCAN_UPDATE_FAILED


_RETRYABLE = frozenset({
    ErrorKind.SOURCE_UNAVAILABLE,
    ErrorKind.LEDGER_WRITE_FAILED,
    ErrorKind.BUSY,
})


class StepFailed(Exception):
    """Internal: a validate/revert step failed with a known kind."""

    def __init__(self, kind: ErrorKind, detail: str = "") -> None:
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail
