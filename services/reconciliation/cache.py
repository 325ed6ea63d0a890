"""
Per-client projection of scans and validation history.

Two writers feed it: the coordinator (optimistic results of its own writes) and
the change-channel handler (authoritative rows pushed by the store). Ordering
between them is decided by the row's updated_at: a change only lands if it is
strictly newer than what the entry last saw, so replays and out-of-order
deliveries are no-ops.

Entries are keyed by scan uuid. Numeric ids are only unique within one scan
table, so lookups by id always name the variant as well.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from services.reconciliation.events import Change, ChangeKind, RecordChange, ScanChange
from services.scans.models import UNKNOWN_CLASSIFICATION, Scan, ScanStatus, ScanVariant, ValidationRecord

logger = logging.getLogger(__name__)

DEFAULT_OFF_DOMAIN_PATTERNS: Tuple[str, ...] = ("non-ampalaya", "non ampalaya")

IdKey = Tuple[ScanVariant, int]


class PendingMutation(str, Enum):
    VALIDATING = "validating"
    REVERTING = "reverting"


@dataclass
class CacheEntry:
    scan: Scan
    last_known_updated_at: datetime
    pending_mutation: Optional[PendingMutation] = None


@dataclass(frozen=True)
class Draft:
    decision: str = ""
    comment: str = ""


def _uuid(value: Optional[str]) -> str:
    return (value or "").strip()


class ReconciliationCache:
    def __init__(self, *, off_domain_patterns: Sequence[str] = DEFAULT_OFF_DOMAIN_PATTERNS) -> None:
        self.off_domain_patterns = tuple(p.strip().lower() for p in off_domain_patterns if p.strip())
        self._entries: Dict[str, CacheEntry] = {}
        self._by_id: Dict[IdKey, str] = {}
        self._records: Dict[int, ValidationRecord] = {}
        self._drafts: Dict[str, Draft] = {}
        self._listeners: List[Callable[[], None]] = []
        self._queue: Optional[List[Scan]] = None

    # --- views ---

    def entry(self, scan_uuid: str) -> Optional[CacheEntry]:
        return self._entries.get(_uuid(scan_uuid))

    def scan_by_uuid(self, scan_uuid: str) -> Optional[Scan]:
        e = self._entries.get(_uuid(scan_uuid))
        return e.scan if e else None

    def scan_by_id(self, scan_id: int, variant: ScanVariant) -> Optional[Scan]:
        scan_uuid = self._by_id.get((variant, scan_id))
        return self.scan_by_uuid(scan_uuid) if scan_uuid is not None else None

    def scans(self) -> List[Scan]:
        return [e.scan for e in self._entries.values()]

    def record(self, record_id: int) -> Optional[ValidationRecord]:
        return self._records.get(record_id)

    def history(self) -> List[ValidationRecord]:
        return sorted(self._records.values(), key=lambda r: (r.validated_at, r.id), reverse=True)

    def is_off_domain(self, scan: Scan) -> bool:
        value = (scan.classification or "").lower()
        return any(p in value for p in self.off_domain_patterns)

    def awaits_validation(self, scan: Scan) -> bool:
        if scan.status is not ScanStatus.PENDING_VALIDATION:
            return False
        if (scan.classification or "").strip().lower() == UNKNOWN_CLASSIFICATION.lower():
            return False
        return not self.is_off_domain(scan)

    def pending_queue(self) -> List[Scan]:
        if self._queue is None:
            queue = [e.scan for e in self._entries.values() if self.awaits_validation(e.scan)]
            queue.sort(key=lambda s: (s.created_at, s.uuid), reverse=True)
            self._queue = queue
        return list(self._queue)

    # --- drafts held for the detail form ---

    def draft(self, scan_uuid: str) -> Draft:
        return self._drafts.get(_uuid(scan_uuid), Draft())

    def set_draft(self, scan_uuid: str, *, decision: Optional[str] = None, comment: Optional[str] = None) -> Draft:
        current = self.draft(scan_uuid)
        d = Draft(
            decision=current.decision if decision is None else decision,
            comment=current.comment if comment is None else comment,
        )
        self._drafts[_uuid(scan_uuid)] = d
        return d

    def clear_draft(self, scan_uuid: str) -> None:
        self._drafts.pop(_uuid(scan_uuid), None)

    # --- listeners ---

    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _changed(self) -> None:
        self._queue = None
        for cb in list(self._listeners):
            try:
                cb()
            except Exception:
                logger.exception("cache listener failed")

    # --- authoritative path (push feed) ---

    def handle(self, change: Change) -> bool:
        """Single entry point for externally sourced changes."""
        if isinstance(change, ScanChange):
            return self.apply_scan_change(change)
        if isinstance(change, RecordChange):
            return self.apply_record_change(change)
        raise TypeError(f"unsupported change: {type(change).__name__}")

    def apply_scan_change(self, change: ScanChange) -> bool:
        if change.kind is ChangeKind.DELETE:
            variant, scan_id = change.key
            if variant is None:
                raise ValueError("DELETE change without a scan variant")
            scan_uuid = self._by_id.pop((variant, scan_id), None)
            if scan_uuid is None:
                return False
            self._entries.pop(scan_uuid, None)
            self._drafts.pop(scan_uuid, None)
            self._changed()
            return True

        scan = change.scan
        if scan is None:
            raise ValueError(f"{change.kind.value} change without a scan")
        entry = self._entries.get(scan.uuid)
        if entry is not None and scan.updated_at <= entry.last_known_updated_at:
            logger.debug(
                "discarding stale change for scan %s (%s <= %s)",
                scan.uuid, scan.updated_at.isoformat(), entry.last_known_updated_at.isoformat(),
            )
            return False
        self._put(scan)
        self._changed()
        return True

    def apply_record_change(self, change: RecordChange) -> bool:
        if change.kind is ChangeKind.DELETE:
            if self._records.pop(change.key, None) is None:
                return False
            self._changed()
            return True

        record = change.record
        if record is None:
            raise ValueError(f"{change.kind.value} change without a record")
        known = self._records.get(record.id)
        if known == record:
            return False
        self._records[record.id] = record
        if known is None:
            self._flip_validated(record)
        self._changed()
        return True

    def _flip_validated(self, record: ValidationRecord) -> None:
        entry = self._entries.get(record.scan_uuid)
        if entry is None:
            return
        if record.validated_at <= entry.last_known_updated_at:
            return
        if entry.scan.status is ScanStatus.VALIDATED:
            return
        # the scan row itself has not caught up yet; keep last_known as-is so it still can
        entry.scan = entry.scan.with_status(
            ScanStatus.VALIDATED,
            expert_validation=record.expert_validation or None,
        )

    def _put(self, scan: Scan, *, marker: Optional[PendingMutation] = None) -> None:
        id_key = (scan.variant, scan.id)
        displaced = self._by_id.get(id_key)
        if displaced is not None and displaced != scan.uuid:
            self._entries.pop(displaced, None)
        old = self._entries.get(scan.uuid)
        if old is not None:
            self._by_id.pop((old.scan.variant, old.scan.id), None)
            marker = marker or old.pending_mutation
        self._entries[scan.uuid] = CacheEntry(
            scan=scan, last_known_updated_at=scan.updated_at, pending_mutation=marker
        )
        self._by_id[id_key] = scan.uuid

    # --- optimistic path (coordinator) ---

    def mark_pending(self, scan_uuid: str, mutation: PendingMutation) -> bool:
        """Set the marker unless the scan is unknown or another mutation already holds it."""
        entry = self._entries.get(_uuid(scan_uuid))
        if entry is None or entry.pending_mutation is not None:
            return False
        entry.pending_mutation = mutation
        self._changed()
        return True

    def clear_pending(self, scan_uuid: str, mutation: Optional[PendingMutation] = None) -> None:
        entry = self._entries.get(_uuid(scan_uuid))
        if entry is None or entry.pending_mutation is None:
            return
        if mutation is not None and entry.pending_mutation is not mutation:
            return
        entry.pending_mutation = None
        self._changed()

    def apply_optimistic(self, scan_uuid: str, status: ScanStatus, updated_at: datetime, **changes: Any) -> bool:
        """
        Record the outcome of our own write. Never overwrites an entry that has
        already seen a strictly newer authoritative row. The pending marker is
        left to whoever set it.
        """
        entry = self._entries.get(_uuid(scan_uuid))
        if entry is None:
            return False
        if entry.last_known_updated_at > updated_at:
            logger.debug("optimistic write for scan %s superseded by newer row", scan_uuid)
            return False
        entry.scan = entry.scan.with_status(status, updated_at, **changes)
        entry.last_known_updated_at = updated_at
        self._changed()
        return True

    def forget_record(self, record_id: int) -> bool:
        if self._records.pop(record_id, None) is None:
            return False
        self._changed()
        return True

    # --- full refresh ---

    def replace_all(self, scans: Iterable[Scan], records: Optional[Iterable[ValidationRecord]] = None) -> None:
        markers = {k: e.pending_mutation for k, e in self._entries.items() if e.pending_mutation}
        self._entries = {}
        self._by_id = {}
        for scan in scans:
            self._put(scan, marker=markers.get(scan.uuid))
        self._drafts = {k: v for k, v in self._drafts.items() if k in self._entries}
        if records is not None:
            self._records = {r.id: r for r in records}
        self._changed()
