"""Approvals for stages that require a human sign-off (production by default)."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from shipyard.api.deps import get_approval_store, get_orchestrator
from shipyard.core.approvals import ApprovalStore
from shipyard.core.pipeline.orchestrator import PipelineOrchestrator

router = APIRouter(prefix="/approvals", tags=["approvals"])


class ApprovalCreateRequest(BaseModel):
    stage: str
    approver: str = Field(min_length=1)
    artifact_id: Optional[str] = None
    git_sha: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def _resolve_artifact_id(orch: PipelineOrchestrator, req: ApprovalCreateRequest) -> str:
    if req.artifact_id:
        return req.artifact_id
    if not req.git_sha:
        raise HTTPException(status_code=422, detail="artifact_id_or_git_sha_required")

    spec = orch.definition.stage(req.stage)
    env = spec.environment if spec else None
    artifact = orch.promotions.find_eligible(env, req.git_sha) if env else None
    if artifact is None:
        raise HTTPException(status_code=409, detail="no_eligible_artifact_for_sha")
    return artifact.identity()


@router.post("", status_code=201)
def create_approval(
    req: ApprovalCreateRequest,
    orch: PipelineOrchestrator = Depends(get_orchestrator),
    store: ApprovalStore = Depends(get_approval_store),
) -> Dict[str, Any]:
    if orch.definition.stage(req.stage) is None:
        raise HTTPException(status_code=404, detail="stage_not_found")
    artifact_id = _resolve_artifact_id(orch, req)
    obj = store.save_approval(
        stage=req.stage,
        artifact_id=artifact_id,
        approver=req.approver,
        notes=req.notes,
        metadata=req.metadata,
    )
    return {"ok": True, "approval": obj}


@router.delete("")
def revoke_approval(
    stage: str = Query(...),
    artifact_id: str = Query(...),
    store: ApprovalStore = Depends(get_approval_store),
) -> Dict[str, Any]:
    existed = store.revoke_approval(stage=stage, artifact_id=artifact_id)
    if not existed:
        raise HTTPException(status_code=404, detail="approval_not_found")
    return {"ok": True, "revoked": True, "stage": stage, "artifact_id": artifact_id}


@router.get("")
def list_approvals(stage: str = Query(...), store: ApprovalStore = Depends(get_approval_store)) -> Dict[str, Any]:
    items = store.list_approvals(stage=stage)
    return {"ok": True, "stage": stage, "count": len(items), "approvals": items}
