from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from apps.common.settings import load_settings
from apps.common.stores import build_stores
from apps.workers.celery_app import celery_app
from services.review.sweep import ReconciliationSweep
from services.stores.base import StoreRequestError, StoreUnavailable

logger = logging.getLogger(__name__)


class TransientWorkerError(RuntimeError):
    """Retriable."""


async def run_sweep(*, auto_heal: Optional[bool] = None) -> Dict[str, Any]:
    settings = load_settings()
    stores = build_stores(settings)
    try:
        sweep = ReconciliationSweep(
            stores.scans,
            stores.ledger,
            auto_heal=settings.auto_heal if auto_heal is None else auto_heal,
        )
        report = await sweep.run()
    finally:
        await stores.aclose()
    return report.as_dict()


@celery_app.task(
    name="scan_review.reconcile_ledger",
    bind=True,
    autoretry_for=(TransientWorkerError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def reconcile_ledger(self, auto_heal: Optional[bool] = None) -> dict:
    try:
        report = asyncio.run(run_sweep(auto_heal=auto_heal))
    except StoreUnavailable as e:
        raise TransientWorkerError(str(e)) from e
    except StoreRequestError as e:
        logger.error("ledger sweep rejected by store: %s", e)
        return {"ok": False, "error": "store_rejected", "detail": str(e)[:300]}
    return {"ok": True, **report}
