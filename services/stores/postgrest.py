# services/stores/postgrest.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from services.scans.models import (
    NewValidationRecord,
    Scan,
    ScanStatus,
    ScanVariant,
    ValidationRecord,
    format_timestamp,
    record_from_row,
    record_to_row,
    scan_from_row,
)
from services.stores.base import RecordNotFound, StoreRequestError, StoreUnavailable

logger = logging.getLogger(__name__)

REST_PATH = "/rest/v1"
LEDGER_TABLE = "validation_history"
CLIENT_INFO = "scan-review"


@dataclass(frozen=True)
class PostgrestConfig:
    base_url: str
    api_key: str
    timeout_s: float = 10.0


class PostgrestClient:
    """
    Minimal async client for a PostgREST-style table API.
    Contract:
      - filters use the `col=eq.value` syntax
      - every failure is raised as a StoreError subclass
      - returns decoded JSON (list of rows) or None for empty bodies
    """

    def __init__(self, config: PostgrestConfig, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=self._build_base(config.base_url),
            timeout=config.timeout_s,
            headers={
                "apikey": config.api_key,
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
                "x-client-info": CLIENT_INFO,
            },
        )

    @staticmethod
    def _build_base(base_url: str) -> str:
        base = (base_url or "").strip()
        if not base:
            raise ValueError("Missing store base_url (SCAN_REVIEW_STORE_URL)")
        return base.rstrip("/") + REST_PATH

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        return_rows: bool = False,
    ) -> Any:
        headers = {"Prefer": "return=representation"} if return_rows else {}
        try:
            resp = await self._client.request(method, f"/{table}", params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise StoreUnavailable(f"{method} {table} timed out") from e
        except httpx.TransportError as e:
            raise StoreUnavailable(f"{method} {table} failed: {e}") from e

        if resp.status_code >= 500:
            raise StoreUnavailable(f"{method} {table}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise StoreRequestError(f"{method} {table}: {self._error_message(resp)}", resp.status_code)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise StoreUnavailable(f"{method} {table}: HTTP {resp.status_code} but body was not JSON") from e

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return f"HTTP {resp.status_code}"
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"HTTP {resp.status_code}"


def _eq(value: Any) -> str:
    return f"eq.{value}"


def _rows(data: Any) -> List[Dict[str, Any]]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise StoreUnavailable(f"expected a list of rows, got {type(data).__name__}")
    return [r for r in data if isinstance(r, dict)]


class PostgrestScanStore:
    def __init__(self, client: PostgrestClient) -> None:
        self.client = client

    async def read_classification(self, scan_uuid: str, variant: ScanVariant) -> Optional[str]:
        field = variant.classification_field
        data = await self.client.request(
            "GET",
            variant.table,
            params={"select": field, "scan_uuid": _eq(scan_uuid), "limit": "1"},
        )
        rows = _rows(data)
        if not rows:
            raise RecordNotFound(f"{variant.table}: no scan {scan_uuid}")
        value = rows[0].get(field)
        return str(value).strip() if value is not None else None

    async def update_status(
        self,
        scan_uuid: str,
        variant: ScanVariant,
        status: ScanStatus,
        timestamp: datetime,
        *,
        clear_comment: bool = False,
    ) -> None:
        body: Dict[str, Any] = {"status": status.value, "updated_at": format_timestamp(timestamp)}
        if clear_comment:
            body["expert_comment"] = None
        data = await self.client.request(
            "PATCH",
            variant.table,
            params={"scan_uuid": _eq(scan_uuid)},
            json=body,
            return_rows=True,
        )
        if not _rows(data):
            raise RecordNotFound(f"{variant.table}: update matched no scan {scan_uuid}")
        logger.debug("scan %s -> %s", scan_uuid, status.value)

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
        """PATCH only while the row still has the status and updated_at we read. False when nothing matched."""
        data = await self.client.request(
            "PATCH",
            variant.table,
            params={
                "scan_uuid": _eq(scan_uuid),
                "status": _eq(seen_status.value),
                "updated_at": _eq(format_timestamp(seen_updated_at)),
            },
            json={"status": status.value, "updated_at": format_timestamp(timestamp)},
            return_rows=True,
        )
        matched = bool(_rows(data))
        logger.debug("scan %s -> %s if unchanged: %s", scan_uuid, status.value, matched)
        return matched

    async def fetch_scan(self, scan_uuid: str, variant: ScanVariant) -> Optional[Scan]:
        data = await self.client.request(
            "GET",
            variant.table,
            params={"select": "*", "scan_uuid": _eq(scan_uuid), "limit": "1"},
        )
        rows = _rows(data)
        return scan_from_row(rows[0], variant) if rows else None

    async def list_scans(self) -> List[Scan]:
        scans: List[Scan] = []
        for variant in ScanVariant:
            data = await self.client.request(
                "GET",
                variant.table,
                params={"select": "*", "order": "created_at.desc"},
            )
            scans.extend(scan_from_row(r, variant) for r in _rows(data))
        scans.sort(key=lambda s: s.created_at, reverse=True)
        return scans


class PostgrestLedgerStore:
    def __init__(self, client: PostgrestClient, *, table: str = LEDGER_TABLE) -> None:
        self.client = client
        self.table = table

    async def append(self, record: NewValidationRecord) -> int:
        data = await self.client.request("POST", self.table, json=record_to_row(record), return_rows=True)
        rows = _rows(data)
        if not rows or rows[0].get("id") is None:
            raise StoreUnavailable(f"{self.table}: insert returned no id")
        return int(rows[0]["id"])

    async def delete(self, record_id: int) -> None:
        await self.client.request("DELETE", self.table, params={"id": _eq(int(record_id))})

    async def get(self, record_id: int) -> Optional[ValidationRecord]:
        data = await self.client.request(
            "GET",
            self.table,
            params={"select": "*", "id": _eq(int(record_id)), "limit": "1"},
        )
        rows = _rows(data)
        return record_from_row(rows[0]) if rows else None

    async def list_records(self) -> List[ValidationRecord]:
        data = await self.client.request(
            "GET",
            self.table,
            params={"select": "*", "order": "validated_at.desc"},
        )
        return [record_from_row(r) for r in _rows(data)]
