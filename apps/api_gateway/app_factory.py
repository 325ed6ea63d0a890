# apps/api_gateway/app_factory.py
from __future__ import annotations

from typing import Any, AsyncContextManager, Callable, Dict, List, Literal, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from services.reconciliation.cache import ReconciliationCache
from services.review.coordinator import ValidationCoordinator
from services.review.errors import ErrorKind
from services.scans.models import Expert, Scan, scan_to_row

STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.BUSY: 409,
    ErrorKind.NOT_OWNER: 403,
    ErrorKind.SCAN_NOT_FOUND: 404,
    ErrorKind.RECORD_NOT_FOUND: 404,
    ErrorKind.MISSING_DECISION: 422,
    ErrorKind.INVALID_IDENTIFIER: 422,
    ErrorKind.INVALID_EXPERT: 422,
    ErrorKind.MISSING_PREDICTION: 422,
    ErrorKind.INELIGIBLE: 422,
    ErrorKind.SOURCE_UNAVAILABLE: 503,
    ErrorKind.LEDGER_WRITE_FAILED: 503,
    ErrorKind.SCAN_UPDATE_FAILED: 502,
}


class ValidateBody(BaseModel):
    action: Literal["confirm", "correct"]
    decision: Optional[str] = None
    comment: Optional[str] = None


def _expert_from_headers(expert_id: Optional[str], expert_name: Optional[str]) -> Optional[Expert]:
    if not expert_id or not expert_id.strip():
        return None
    return Expert(id=expert_id.strip(), display_name=(expert_name or "").strip())


def _status_for(kind: Optional[ErrorKind]) -> int:
    return 200 if kind is None else STATUS_BY_KIND.get(kind, 500)


def create_app(
    *,
    coordinator: ValidationCoordinator,
    cache: ReconciliationCache,
    lifespan: Optional[Callable[[FastAPI], AsyncContextManager[None]]] = None,
) -> FastAPI:
    app = FastAPI(title="Scan Review Gateway", lifespan=lifespan)

    def scan_json(scan: Scan) -> Dict[str, Any]:
        entry = cache.entry(scan.uuid)
        out = scan_to_row(scan)
        out["classification"] = scan.classification
        out["pending_mutation"] = entry.pending_mutation.value if entry and entry.pending_mutation else None
        return out

    @app.get("/")
    async def root():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/scans/pending")
    async def pending_queue() -> Dict[str, Any]:
        queue: List[Scan] = cache.pending_queue()
        return {"count": len(queue), "scans": [scan_json(s) for s in queue]}

    @app.get("/scans/{scan_uuid}")
    async def scan_detail(scan_uuid: str):
        scan = cache.scan_by_uuid(scan_uuid)
        if scan is None:
            raise HTTPException(status_code=404, detail="scan_not_found")
        return scan_json(scan)

    @app.post("/scans/{scan_uuid}/validate")
    async def validate_scan(
        scan_uuid: str,
        body: ValidateBody,
        x_expert_id: Optional[str] = Header(None),
        x_expert_name: Optional[str] = Header(None),
    ):
        result = await coordinator.validate(
            scan_uuid,
            body.action,
            decision_value=body.decision,
            comment=body.comment,
            expert=_expert_from_headers(x_expert_id, x_expert_name),
        )
        return JSONResponse(status_code=_status_for(result.kind), content=result.as_dict())

    @app.delete("/validations/{record_id}")
    async def revert_validation(
        record_id: int,
        x_expert_id: Optional[str] = Header(None),
        x_expert_name: Optional[str] = Header(None),
    ):
        result = await coordinator.revert(record_id, expert=_expert_from_headers(x_expert_id, x_expert_name))
        return JSONResponse(status_code=_status_for(result.kind), content=result.as_dict())

    @app.post("/refresh")
    async def refresh():
        ok = await coordinator.refresh()
        if not ok:
            return JSONResponse(status_code=503, content={"ok": False, "error": ErrorKind.SOURCE_UNAVAILABLE.value})
        return {"ok": True, "count": len(cache.scans())}

    return app
