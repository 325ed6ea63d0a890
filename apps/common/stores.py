from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from apps.common.settings import AppSettings
from services.reconciliation.channel import ChangeChannel
from services.stores.base import LedgerStore, ScanStore
from services.stores.memory import InMemoryLedgerStore, InMemoryScanStore
from services.stores.postgrest import (
    PostgrestClient,
    PostgrestConfig,
    PostgrestLedgerStore,
    PostgrestScanStore,
)


@dataclass
class StoreBundle:
    scans: ScanStore
    ledger: LedgerStore
    client: Optional[PostgrestClient] = None

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()


def build_stores(settings: AppSettings, *, channel: Optional[ChangeChannel] = None) -> StoreBundle:
    if settings.store_backend == "memory":
        return StoreBundle(
            scans=InMemoryScanStore(channel=channel),
            ledger=InMemoryLedgerStore(channel=channel),
        )
    client = PostgrestClient(
        PostgrestConfig(
            base_url=settings.store_url,
            api_key=settings.store_api_key,
            timeout_s=settings.step_timeout_s,
        )
    )
    return StoreBundle(scans=PostgrestScanStore(client), ledger=PostgrestLedgerStore(client), client=client)
