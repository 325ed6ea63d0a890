from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from services.scans.models import Scan, ScanVariant, ValidationRecord, record_from_row, scan_from_row
from services.scans.schema_validation import MalformedRow

LEDGER_TABLE = "validation_history"


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ScanChange:
    kind: ChangeKind
    scan: Optional[Scan] = None
    # DELETE events only carry the old row's id; ids are per table, so the variant goes with it
    scan_id: Optional[int] = None
    variant: Optional[ScanVariant] = None

    @property
    def key(self) -> Tuple[Optional[ScanVariant], int]:
        if self.scan is not None:
            return self.scan.variant, self.scan.id
        return self.variant, int(self.scan_id or 0)


@dataclass(frozen=True)
class RecordChange:
    kind: ChangeKind
    record: Optional[ValidationRecord] = None
    record_id: Optional[int] = None

    @property
    def key(self) -> int:
        return self.record.id if self.record is not None else int(self.record_id or 0)


Change = Union[ScanChange, RecordChange]


def _old_id(payload: Dict[str, Any]) -> int:
    old = payload.get("old") or {}
    if not isinstance(old, dict) or not isinstance(old.get("id"), int):
        raise MalformedRow("DELETE event without old.id")
    return int(old["id"])


def decode_change(payload: Dict[str, Any]) -> Change:
    """
    Realtime payload shape: {"eventType", "table", "new", "old"}.
    Scan rows may omit scan_type; the table decides the variant.
    """
    if not isinstance(payload, dict):
        raise MalformedRow("change payload must be an object")
    try:
        kind = ChangeKind(str(payload.get("eventType", "")).upper())
    except ValueError as e:
        raise MalformedRow(f"unknown eventType: {payload.get('eventType')!r}") from e
    table = str(payload.get("table") or "")

    if table == LEDGER_TABLE:
        if kind is ChangeKind.DELETE:
            return RecordChange(kind=kind, record_id=_old_id(payload))
        return RecordChange(kind=kind, record=record_from_row(payload.get("new")))

    try:
        variant = ScanVariant.from_table(table)
    except ValueError as e:
        raise MalformedRow(str(e)) from e
    if kind is ChangeKind.DELETE:
        return ScanChange(kind=kind, scan_id=_old_id(payload), variant=variant)
    return ScanChange(kind=kind, scan=scan_from_row(payload.get("new"), variant))
