from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from shipyard.api.deps import get_orchestrator, raise_http
from shipyard.core.errors import ArtifactNotDeployedError, ShipyardError
from shipyard.core.pipeline.gates import matches_release_tag
from shipyard.core.pipeline.orchestrator import PipelineOrchestrator

router = APIRouter(prefix="/promotions", tags=["promotions"])


class PromotionRequest(BaseModel):
    from_env: str
    to_env: str
    operator: str = Field(min_length=1)
    artifact_id: Optional[str] = None
    release_tag: Optional[str] = None
    dry_run: bool = False


@router.post("")
def promote(req: PromotionRequest, orch: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    if req.release_tag is not None and not matches_release_tag(orch.definition, req.release_tag):
        raise HTTPException(
            status_code=400,
            detail={
                "type": "InvalidReleaseTag",
                "message": f"release tag '{req.release_tag}' does not match {orch.definition.release_tag_pattern}",
                "details": {"release_tag": req.release_tag, "pattern": orch.definition.release_tag_pattern},
            },
        )
    ctl = orch.promotions
    try:
        ctl.validate_transition(req.from_env, req.to_env)
        artifact = ctl.current(req.from_env)
        if artifact is None:
            raise ArtifactNotDeployedError(
                f"nothing is deployed in '{req.from_env}'", details={"environment": req.from_env}
            )
        if req.artifact_id and req.artifact_id != artifact.identity():
            raise ArtifactNotDeployedError(
                f"artifact {req.artifact_id} is not current in '{req.from_env}'",
                details={"environment": req.from_env, "current": artifact.identity()},
            )
        if req.release_tag:
            artifact = artifact.with_release_tag(req.release_tag)
        record = ctl.promote(artifact, req.from_env, req.to_env, operator=req.operator, dry_run=req.dry_run)
    except ShipyardError as e:
        raise_http(e)
    return {"ok": True, "promotion": record.to_dict()}
