from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from services.scans.models import Scan, ScanStatus, ScanVariant, ValidationRecord
from services.stores.base import LedgerStore, ScanStore, StoreError

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    orphans: List[str] = field(default_factory=list)
    healed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "checked": self.checked,
            "orphans": list(self.orphans),
            "healed": list(self.healed),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
        }


class ReconciliationSweep:
    """
    Finds scans the ledger says were validated but whose row is still pending
    (a validate that died between the ledger append and the scan update) and,
    with auto_heal, finishes the forward write. Scans that moved on since they were
    listed, or whose record was reverted meanwhile, are reported as skipped.
    """

    def __init__(
        self,
        scan_store: ScanStore,
        ledger_store: LedgerStore,
        *,
        auto_heal: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.scan_store = scan_store
        self.ledger_store = ledger_store
        self.auto_heal = auto_heal
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self) -> SweepReport:
        report = SweepReport()
        scans: Dict[Tuple[str, ScanVariant], Scan] = {
            (s.uuid, s.variant): s for s in await self.scan_store.list_scans()
        }
        by_uuid: Dict[str, Scan] = {s.uuid: s for s in scans.values()}
        seen = set()

        for record in await self.ledger_store.list_records():
            if record.scan_uuid in seen:
                continue
            seen.add(record.scan_uuid)
            report.checked += 1

            scan = self._match(record, scans, by_uuid)
            if scan is None or scan.status is not ScanStatus.PENDING_VALIDATION:
                continue
            # a ledger row newer than the scan's last write means the flip never happened
            if record.validated_at < scan.updated_at:
                continue

            report.orphans.append(scan.uuid)
            if not self.auto_heal:
                continue
            try:
                healed = await self._heal(scan, record)
            except StoreError as e:
                logger.warning("could not heal scan %s: %s", scan.uuid, e)
                report.failed.append(scan.uuid)
                continue
            if not healed:
                report.skipped.append(scan.uuid)
                continue
            logger.info("healed scan %s from ledger record %s", scan.uuid, record.id)
            report.healed.append(scan.uuid)

        if report.orphans:
            logger.warning(
                "sweep found %d orphaned validations (%d healed, %d skipped, %d failed)",
                len(report.orphans), len(report.healed), len(report.skipped), len(report.failed),
            )
        return report

    async def _heal(self, scan: Scan, record: ValidationRecord) -> bool:
        """
        Finish the forward write, but only while the ledger row still exists and
        the scan row is exactly as listed. A heal that finds the record gone
        right after its own write puts the scan back to pending.
        """
        if await self.ledger_store.get(record.id) is None:
            logger.info("record %s for scan %s is gone; not healing", record.id, scan.uuid)
            return False

        healed_at = self._after(scan.updated_at)
        written = await self.scan_store.update_status_if_unchanged(
            scan.uuid,
            scan.variant,
            ScanStatus.VALIDATED,
            healed_at,
            seen_status=ScanStatus.PENDING_VALIDATION,
            seen_updated_at=scan.updated_at,
        )
        if not written:
            logger.info("scan %s changed since it was listed; not healing", scan.uuid)
            return False

        if await self.ledger_store.get(record.id) is not None:
            return True

        logger.warning("record %s was reverted while scan %s was healed; undoing", record.id, scan.uuid)
        await self.scan_store.update_status_if_unchanged(
            scan.uuid,
            scan.variant,
            ScanStatus.PENDING_VALIDATION,
            self._after(healed_at),
            seen_status=ScanStatus.VALIDATED,
            seen_updated_at=healed_at,
        )
        return False

    def _after(self, ts: datetime) -> datetime:
        # every write must carry an updated_at strictly newer than the row it replaces
        now = self._clock()
        return now if now > ts else ts + timedelta(microseconds=1)

    @staticmethod
    def _match(
        record: ValidationRecord,
        scans: Dict[Tuple[str, ScanVariant], Scan],
        by_uuid: Dict[str, Scan],
    ) -> Optional[Scan]:
        if record.scan_variant is not None:
            return scans.get((record.scan_uuid, record.scan_variant))
        return by_uuid.get(record.scan_uuid)
