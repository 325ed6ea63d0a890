from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from services.review.errors import ErrorKind


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    scan_uuid: str
    kind: Optional[ErrorKind] = None
    record_id: Optional[int] = None
    detail: str = ""

    @classmethod
    def success(cls, scan_uuid: str, record_id: int) -> "ValidationResult":
        return cls(ok=True, scan_uuid=scan_uuid, record_id=record_id)

    @classmethod
    def failure(cls, scan_uuid: str, kind: ErrorKind, detail: str = "", record_id: Optional[int] = None) -> "ValidationResult":
        return cls(ok=False, scan_uuid=scan_uuid, kind=kind, record_id=record_id, detail=detail)

    @property
    def retryable(self) -> bool:
        return bool(self.kind and self.kind.retryable)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "scan_uuid": self.scan_uuid,
            "error": self.kind.value if self.kind else None,
            "retryable": self.retryable,
            "record_id": self.record_id,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class RevertResult:
    ok: bool
    record_id: int
    kind: Optional[ErrorKind] = None
    # set when the ledger row is gone but the scan could not be put back to pending
    warning: Optional[ErrorKind] = None
    scan_uuid: Optional[str] = None
    detail: str = ""

    @property
    def retryable(self) -> bool:
        return bool(self.kind and self.kind.retryable)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "record_id": self.record_id,
            "error": self.kind.value if self.kind else None,
            "warning": self.warning.value if self.warning else None,
            "retryable": self.retryable,
            "scan_uuid": self.scan_uuid,
            "detail": self.detail,
        }
