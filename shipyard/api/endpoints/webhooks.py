from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from starlette.responses import JSONResponse

from shipyard.api.deps import get_orchestrator, raise_http
from shipyard.core.errors import ShipyardError
from shipyard.core.pipeline.orchestrator import PipelineOrchestrator
from shipyard.core.signing import ensure_signature
from shipyard.core.webhooks import parse_event
from shipyard.settings import get_settings

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

log = logging.getLogger("shipyard.webhooks")


@router.post("/scm", status_code=202)
async def scm_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_github_event: Optional[str] = Header(default=None),
    x_hub_signature_256: Optional[str] = Header(default=None),
    x_github_delivery: Optional[str] = Header(default=None),
    orch: PipelineOrchestrator = Depends(get_orchestrator),
) -> Any:
    body = await request.body()
    try:
        ensure_signature(body, x_hub_signature_256, get_settings().webhook_secret)
    except ShipyardError as e:
        log.warning("Rejected webhook delivery=%s: %s", x_github_delivery, e)
        raise_http(e)

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_json")

    try:
        parsed = parse_event(x_github_event or "", payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if parsed.ignored:
        return JSONResponse(status_code=202, content={"ignored": True, "reason": parsed.reason})

    try:
        run = orch.start(parsed.trigger)
    except ShipyardError as e:
        raise_http(e)
    background_tasks.add_task(orch.execute, run.run_id)
    log.info("Webhook delivery=%s started run %s", x_github_delivery, run.run_id)

    out: Dict[str, Any] = {
        "ignored": False,
        "run_id": run.run_id,
        "state": run.state.value,
        "trigger": run.trigger.to_dict(),
    }
    return out
