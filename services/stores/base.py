from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from services.scans.models import (
    Expert,
    NewValidationRecord,
    Scan,
    ScanStatus,
    ScanVariant,
    ValidationRecord,
)


class StoreError(RuntimeError):
    """Base class for scan/ledger store failures."""


class StoreUnavailable(StoreError):
    """Transport failure, timeout or server-side error. Retriable."""


class StoreRequestError(StoreError):
    """The store rejected the request (4xx)."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class RecordNotFound(StoreError):
    """No row matched the request."""


class ScanStore(Protocol):
    async def read_classification(self, scan_uuid: str, variant: ScanVariant) -> Optional[str]: ...

    async def update_status(
        self,
        scan_uuid: str,
        variant: ScanVariant,
        status: ScanStatus,
        timestamp: datetime,
        *,
        clear_comment: bool = False,
    ) -> None: ...

    async def update_status_if_unchanged(
        self,
        scan_uuid: str,
        variant: ScanVariant,
        status: ScanStatus,
        timestamp: datetime,
        *,
        seen_status: ScanStatus,
        seen_updated_at: datetime,
    ) -> bool: ...

    async def fetch_scan(self, scan_uuid: str, variant: ScanVariant) -> Optional[Scan]: ...

    async def list_scans(self) -> List[Scan]: ...


class LedgerStore(Protocol):
    async def append(self, record: NewValidationRecord) -> int: ...

    async def delete(self, record_id: int) -> None: ...

    async def get(self, record_id: int) -> Optional[ValidationRecord]: ...

    async def list_records(self) -> List[ValidationRecord]: ...


class IdentityProvider(Protocol):
    def current_expert(self) -> Optional[Expert]: ...
