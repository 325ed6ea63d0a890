from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from services.reconciliation.channel import ChangeChannel
from services.reconciliation.events import ChangeKind, RecordChange, ScanChange
from services.scans.models import (
    NewValidationRecord,
    Scan,
    ScanStatus,
    ScanVariant,
    ValidationRecord,
)
from services.stores.base import RecordNotFound


class InMemoryScanStore:
    """Scan rows held in process. Updates are echoed on the channel like the push feed."""

    def __init__(self, scans: Iterable[Scan] = (), *, channel: Optional[ChangeChannel] = None) -> None:
        self._rows: Dict[str, Scan] = {s.uuid: s for s in scans}
        self.channel = channel
        self.updates: List[Dict[str, object]] = []

    def _find(self, scan_uuid: str, variant: ScanVariant) -> Scan:
        scan = self._rows.get(scan_uuid)
        if scan is None or scan.variant is not variant:
            raise RecordNotFound(f"{variant.table}: no scan {scan_uuid}")
        return scan

    def insert(self, scan: Scan) -> None:
        self._rows[scan.uuid] = scan
        if self.channel is not None:
            self.channel.publish(ScanChange(kind=ChangeKind.INSERT, scan=scan))

    def row(self, scan_uuid: str) -> Optional[Scan]:
        return self._rows.get(scan_uuid)

    async def read_classification(self, scan_uuid: str, variant: ScanVariant) -> Optional[str]:
        return self._find(scan_uuid, variant).classification or None

    async def update_status(
        self,
        scan_uuid: str,
        variant: ScanVariant,
        status: ScanStatus,
        timestamp: datetime,
        *,
        clear_comment: bool = False,
    ) -> None:
        scan = self._find(scan_uuid, variant)
        changes = {"expert_comment": None} if clear_comment else {}
        updated = scan.with_status(status, timestamp, **changes)
        self._rows[scan_uuid] = updated
        self.updates.append({"scan_uuid": scan_uuid, "status": status, "timestamp": timestamp})
        if self.channel is not None:
            self.channel.publish(ScanChange(kind=ChangeKind.UPDATE, scan=updated))

    async def update_status_if_unchanged(
        self,
        scan_uuid: str,
        variant: ScanVariant,
        status: ScanStatus,
        timestamp: datetime,
        *,
        seen_status: ScanStatus,
        seen_updated_at: datetime,
    ) -> bool:
        current = self._rows.get(scan_uuid)
        if current is None or current.variant is not variant:
            return False
        if current.status is not seen_status or current.updated_at != seen_updated_at:
            return False
        await self.update_status(scan_uuid, variant, status, timestamp)
        return True

    async def fetch_scan(self, scan_uuid: str, variant: ScanVariant) -> Optional[Scan]:
        scan = self._rows.get(scan_uuid)
        return scan if scan is not None and scan.variant is variant else None

    async def list_scans(self) -> List[Scan]:
        return sorted(self._rows.values(), key=lambda s: s.created_at, reverse=True)


class InMemoryLedgerStore:
    def __init__(self, *, channel: Optional[ChangeChannel] = None) -> None:
        self._records: Dict[int, ValidationRecord] = {}
        self._ids = itertools.count(1)
        self.channel = channel

    async def append(self, record: NewValidationRecord) -> int:
        record_id = next(self._ids)
        stored = ValidationRecord(**{**record.__dict__, "id": record_id})
        self._records[record_id] = stored
        if self.channel is not None:
            self.channel.publish(RecordChange(kind=ChangeKind.INSERT, record=stored))
        return record_id

    async def delete(self, record_id: int) -> None:
        if self._records.pop(int(record_id), None) is not None and self.channel is not None:
            self.channel.publish(RecordChange(kind=ChangeKind.DELETE, record_id=int(record_id)))

    async def get(self, record_id: int) -> Optional[ValidationRecord]:
        return self._records.get(int(record_id))

    async def list_records(self) -> List[ValidationRecord]:
        return sorted(self._records.values(), key=lambda r: r.validated_at, reverse=True)

    def seed(self, record: ValidationRecord) -> ValidationRecord:
        record = replace(record, id=next(self._ids))
        self._records[record.id] = record
        return record
