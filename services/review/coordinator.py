# services/review/coordinator.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from services.reconciliation.cache import PendingMutation, ReconciliationCache
from services.review.errors import ErrorKind, StepFailed
from services.review.results import RevertResult, ValidationResult
from services.review.single_flight import SingleFlight
from services.scans.models import (
    Expert,
    NewValidationRecord,
    RecordStatus,
    Scan,
    ScanStatus,
    ScanVariant,
    ValidationRecord,
    is_valid_uuid,
)
from services.stores.base import IdentityProvider, LedgerStore, RecordNotFound, ScanStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT_S = 10.0


class ValidationAction(str, Enum):
    CONFIRM = "confirm"
    CORRECT = "correct"


@dataclass(frozen=True)
class _Plan:
    scan_uuid: str
    variant: ScanVariant
    action: ValidationAction
    expert: Expert
    decision: str
    comment: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationCoordinator:
    """
    Runs the confirm/correct saga and its inverse (revert) against two stores
    that share no transaction:

      validate: read prediction -> append ledger record -> flip scan status
      revert:   delete ledger record -> put scan back to pending (best effort)

    Every failure comes back as a typed result; nothing raises past this class.
    """

    def __init__(
        self,
        scan_store: ScanStore,
        ledger_store: LedgerStore,
        cache: ReconciliationCache,
        *,
        identity: Optional[IdentityProvider] = None,
        step_timeout_s: float = DEFAULT_STEP_TIMEOUT_S,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.scan_store = scan_store
        self.ledger_store = ledger_store
        self.cache = cache
        self.identity = identity
        self.step_timeout_s = step_timeout_s
        self._clock = clock or _utcnow
        self._inflight = SingleFlight()

    @property
    def inflight(self) -> SingleFlight:
        return self._inflight

    def _now(self) -> datetime:
        now = self._clock()
        return now if now.tzinfo else now.replace(tzinfo=timezone.utc)

    async def _step(
        self,
        awaitable: Awaitable[Any],
        kind: ErrorKind,
        what: str,
        *,
        not_found: Optional[ErrorKind] = None,
    ) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.step_timeout_s)
        except asyncio.TimeoutError as e:
            raise StepFailed(kind, f"{what} timed out after {self.step_timeout_s}s") from e
        except RecordNotFound as e:
            raise StepFailed(not_found or kind, f"{what}: {e}") from e
        except StoreError as e:
            raise StepFailed(kind, f"{what}: {e}") from e
        except Exception as e:
            logger.exception("unexpected failure during %s", what)
            raise StepFailed(kind, f"{what}: {e}") from e

    def _resolve_expert(self, expert: Optional[Expert]) -> Expert:
        if expert is None and self.identity is not None:
            expert = self.identity.current_expert()
        if expert is None:
            raise StepFailed(ErrorKind.INVALID_EXPERT, "no signed-in expert")
        if not is_valid_uuid(expert.id):
            raise StepFailed(ErrorKind.INVALID_EXPERT, f"malformed expert id: {expert.id!r}")
        return Expert(id=expert.id.strip(), display_name=expert.name_for_ledger)

    # --- validate ---

    async def validate(
        self,
        scan_uuid: str,
        action: Union[ValidationAction, str],
        decision_value: Optional[str] = None,
        comment: Optional[str] = None,
        *,
        expert: Optional[Expert] = None,
    ) -> ValidationResult:
        key = (scan_uuid or "").strip()
        if not self._inflight.acquire(key):
            logger.debug("scan %s already being validated", key)
            return ValidationResult.failure(key, ErrorKind.BUSY, "validation already in flight")

        handed_off = False
        marked = False
        try:
            try:
                plan = self._prepare(key, action, decision_value, comment, expert)
                marked = self.cache.mark_pending(key, PendingMutation.VALIDATING)
                ai_prediction = await self._read_prediction(plan)
            except StepFailed as e:
                return self._failed(key, e)

            expert_validation = ai_prediction if plan.action is ValidationAction.CONFIRM else plan.decision

            # From here on the write runs to completion even if the caller stops waiting.
            commit = asyncio.ensure_future(self._commit(plan, ai_prediction, expert_validation, marked))
            handed_off = True
            return await asyncio.shield(commit)
        finally:
            if not handed_off:
                if marked:
                    self.cache.clear_pending(key, PendingMutation.VALIDATING)
                self._inflight.release(key)

    def _prepare(
        self,
        scan_uuid: str,
        action: Union[ValidationAction, str],
        decision_value: Optional[str],
        comment: Optional[str],
        expert: Optional[Expert],
    ) -> _Plan:
        try:
            act = ValidationAction(action)
        except ValueError as e:
            raise StepFailed(ErrorKind.MISSING_DECISION, f"unknown action: {action!r}") from e

        scan = self.cache.scan_by_uuid(scan_uuid)
        if scan is None:
            raise StepFailed(ErrorKind.SCAN_NOT_FOUND, f"scan {scan_uuid!r} is not loaded")
        if scan.status is not ScanStatus.PENDING_VALIDATION:
            raise StepFailed(ErrorKind.INELIGIBLE, f"scan {scan_uuid} is {scan.status.value}")

        who = self._resolve_expert(expert)

        decision = (decision_value or "").strip()
        if act is ValidationAction.CORRECT and not decision:
            raise StepFailed(ErrorKind.MISSING_DECISION, "a correction needs a corrected value")

        if not is_valid_uuid(scan.uuid):
            raise StepFailed(ErrorKind.INVALID_IDENTIFIER, f"scan {scan.id} has malformed uuid {scan.uuid!r}")

        return _Plan(
            scan_uuid=scan.uuid.strip(),
            variant=scan.variant,
            action=act,
            expert=who,
            decision=decision,
            comment=(comment or "").strip(),
        )

    async def _read_prediction(self, plan: _Plan) -> str:
        # always from the store, never from the cached row
        value = await self._step(
            self.scan_store.read_classification(plan.scan_uuid, plan.variant),
            ErrorKind.SOURCE_UNAVAILABLE,
            f"read {plan.variant.classification_field}",
            not_found=ErrorKind.SCAN_NOT_FOUND,
        )
        if not value or not str(value).strip():
            raise StepFailed(
                ErrorKind.MISSING_PREDICTION,
                f"{plan.variant.classification_field} is empty for scan {plan.scan_uuid}",
            )
        return str(value).strip()

    async def _commit(
        self, plan: _Plan, ai_prediction: str, expert_validation: str, marked: bool
    ) -> ValidationResult:
        try:
            validated_at = self._now()
            record = NewValidationRecord(
                scan_uuid=plan.scan_uuid,
                scan_variant=plan.variant,
                expert_id=plan.expert.id,
                expert_name=plan.expert.display_name,
                ai_prediction=ai_prediction,
                expert_validation=expert_validation,
                comment=plan.comment,
                status=RecordStatus.VALIDATED if plan.action is ValidationAction.CONFIRM else RecordStatus.CORRECTED,
                validated_at=validated_at,
            )
            try:
                record_id = await self._step(
                    self.ledger_store.append(record), ErrorKind.LEDGER_WRITE_FAILED, "append ledger record"
                )
            except StepFailed as e:
                return self._failed(plan.scan_uuid, e)

            # both confirm and correct leave the scan Validated; the ledger keeps the difference
            updated_at = max(self._now(), validated_at)
            try:
                await self._step(
                    self.scan_store.update_status(plan.scan_uuid, plan.variant, ScanStatus.VALIDATED, updated_at),
                    ErrorKind.SCAN_UPDATE_FAILED,
                    "update scan status",
                )
            except StepFailed as e:
                logger.error(
                    "ledger record %s written but scan %s not updated: %s",
                    record_id, plan.scan_uuid, e.detail,
                )
                return ValidationResult.failure(plan.scan_uuid, e.kind, e.detail, record_id=record_id)

            self.cache.apply_optimistic(
                plan.scan_uuid, ScanStatus.VALIDATED, updated_at, expert_validation=expert_validation
            )
            self.cache.clear_draft(plan.scan_uuid)
            logger.info(
                "scan %s %s by %s (record %s)",
                plan.scan_uuid,
                "confirmed" if plan.action is ValidationAction.CONFIRM else "corrected",
                plan.expert.id,
                record_id,
            )
            return ValidationResult.success(plan.scan_uuid, int(record_id))
        finally:
            if marked:
                self.cache.clear_pending(plan.scan_uuid, PendingMutation.VALIDATING)
            self._inflight.release(plan.scan_uuid)

    def _failed(self, scan_uuid: str, e: StepFailed) -> ValidationResult:
        if e.kind is not ErrorKind.BUSY:
            logger.warning("validate scan %s failed: %s (%s)", scan_uuid, e.kind.value, e.detail)
        return ValidationResult.failure(scan_uuid, e.kind, e.detail)

    # --- revert ---

    async def revert(self, record_id: int, *, expert: Optional[Expert] = None) -> RevertResult:
        key = ("revert", record_id)
        if not self._inflight.acquire(key):
            return RevertResult(ok=False, record_id=record_id, kind=ErrorKind.BUSY, detail="revert already in flight")

        marked: Optional[str] = None
        try:
            try:
                who = self._resolve_expert(expert)
                record: Optional[ValidationRecord] = await self._step(
                    self.ledger_store.get(record_id), ErrorKind.SOURCE_UNAVAILABLE, "read ledger record"
                )
                if record is None:
                    raise StepFailed(ErrorKind.RECORD_NOT_FOUND, f"no validation record {record_id}")
                if record.expert_id != who.id:
                    raise StepFailed(ErrorKind.NOT_OWNER, "only the validating expert may revert this record")

                scan = self.cache.scan_by_uuid(record.scan_uuid)
                if scan is not None and self.cache.mark_pending(scan.uuid, PendingMutation.REVERTING):
                    marked = scan.uuid

                await self._step(
                    self.ledger_store.delete(record_id), ErrorKind.LEDGER_WRITE_FAILED, "delete ledger record"
                )
            except StepFailed as e:
                logger.warning("revert record %s failed: %s (%s)", record_id, e.kind.value, e.detail)
                return RevertResult(ok=False, record_id=record_id, kind=e.kind, detail=e.detail)

            self.cache.forget_record(record_id)
            logger.info("validation record %s deleted by %s", record_id, who.id)

            try:
                await self._restore_pending(record, scan)
            except StepFailed as e:
                logger.warning(
                    "record %s deleted but scan %s not put back to pending: %s",
                    record_id, record.scan_uuid, e.detail,
                )
                return RevertResult(
                    ok=True,
                    record_id=record_id,
                    warning=ErrorKind.SCAN_UPDATE_FAILED,
                    scan_uuid=record.scan_uuid,
                    detail=e.detail,
                )
            return RevertResult(ok=True, record_id=record_id, scan_uuid=record.scan_uuid)
        finally:
            if marked is not None:
                self.cache.clear_pending(marked, PendingMutation.REVERTING)
            self._inflight.release(key)

    async def _restore_pending(self, record: ValidationRecord, scan: Optional[Scan]) -> None:
        if scan is None:
            scan = await self._step(self._locate_scan(record), ErrorKind.SCAN_UPDATE_FAILED, "look up scan")
        if scan is None or scan.status is ScanStatus.PENDING_VALIDATION:
            return
        ts = self._now()
        await self._step(
            self.scan_store.update_status(
                scan.uuid, scan.variant, ScanStatus.PENDING_VALIDATION, ts, clear_comment=True
            ),
            ErrorKind.SCAN_UPDATE_FAILED,
            "revert scan status",
        )
        self.cache.apply_optimistic(
            scan.uuid, ScanStatus.PENDING_VALIDATION, ts, expert_comment=None, expert_validation=None
        )

    async def _locate_scan(self, record: ValidationRecord) -> Optional[Scan]:
        variants = [record.scan_variant] if record.scan_variant else list(ScanVariant)
        for variant in variants:
            scan = await self.scan_store.fetch_scan(record.scan_uuid, variant)
            if scan is not None:
                return scan
        return None

    # --- full refresh ---

    async def refresh(self) -> bool:
        try:
            scans = await self._step(self.scan_store.list_scans(), ErrorKind.SOURCE_UNAVAILABLE, "list scans")
            records = await self._step(
                self.ledger_store.list_records(), ErrorKind.SOURCE_UNAVAILABLE, "list validation records"
            )
        except StepFailed as e:
            logger.warning("full refresh failed: %s", e.detail)
            return False
        self.cache.replace_all(scans, records)
        logger.info("cache refreshed: %d scans, %d records", len(scans), len(records))
        return True
