from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from shipyard.api.deps import get_orchestrator
from shipyard.core.pipeline.orchestrator import PipelineOrchestrator

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


@router.get("")
def get_pipeline(orch: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    defn = orch.definition
    return {
        "name": defn.name,
        "definition_hash": defn.definition_hash(),
        "order": orch.order,
        "environments": orch.promotions.environments,
        "definition": defn.model_dump(mode="json"),
    }
