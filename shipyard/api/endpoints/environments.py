from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from shipyard.api.deps import get_orchestrator, raise_http
from shipyard.core.errors import ShipyardError
from shipyard.core.pipeline.orchestrator import PipelineOrchestrator

router = APIRouter(prefix="/environments", tags=["environments"])


class LockRequest(BaseModel):
    by: str = Field(min_length=1)
    reason: str = ""


class UnlockRequest(BaseModel):
    by: Optional[str] = None


def _known(orch: PipelineOrchestrator, env: str) -> None:
    if env not in orch.promotions.environments:
        raise HTTPException(status_code=404, detail="environment_not_found")


@router.get("")
def list_environments(orch: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return {"environments": orch.promotions.status()}


@router.get("/{env}/history")
def environment_history(
    env: str,
    limit: int = Query(default=50, ge=1, le=500),
    orch: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    _known(orch, env)
    return {"environment": env, "history": orch.promotions.history(env, limit=limit)}


@router.post("/{env}/lock")
def lock_environment(
    env: str,
    req: LockRequest,
    orch: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    _known(orch, env)
    try:
        lock = orch.promotions.lock(env, by=req.by, reason=req.reason)
    except ShipyardError as e:
        raise_http(e)
    return {"environment": env, "locked": True, "lock": lock}


@router.post("/{env}/unlock")
def unlock_environment(
    env: str,
    req: Optional[UnlockRequest] = None,
    orch: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    _known(orch, env)
    try:
        was_locked = orch.promotions.unlock(env, by=req.by if req else None)
    except ShipyardError as e:
        raise_http(e)
    return {"environment": env, "locked": False, "was_locked": was_locked}
