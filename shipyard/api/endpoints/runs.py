from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from shipyard.api.deps import get_orchestrator, raise_http
from shipyard.core.errors import ShipyardError
from shipyard.core.pipeline.models import PipelineRun, RunState, Trigger, TriggerKind
from shipyard.core.pipeline.orchestrator import PipelineOrchestrator

router = APIRouter(prefix="/runs", tags=["runs"])


class RunCreateRequest(BaseModel):
    sha: str = Field(min_length=7, max_length=64)
    ref: str = "main"
    kind: TriggerKind = TriggerKind.MANUAL
    stages: Optional[List[str]] = None
    actor: Optional[str] = None


def run_summary(run: PipelineRun) -> Dict[str, Any]:
    return {
        "run_id": run.run_id,
        "state": run.state.value,
        "trigger": run.trigger.to_dict(),
        "artifact": run.artifact.to_dict() if run.artifact else None,
        "stages": {s.name: s.status.value for s in run.stages},
        "created_ts": run.created_ts,
        "finished_ts": run.finished_ts,
        "retry_of": run.retry_of,
    }


@router.post("", status_code=202)
def create_run(
    req: RunCreateRequest,
    background_tasks: BackgroundTasks,
    orch: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    trigger = Trigger(kind=req.kind, ref=req.ref, sha=req.sha, actor=req.actor)
    try:
        run = orch.start(trigger, stages=req.stages)
    except ShipyardError as e:
        raise_http(e)
    background_tasks.add_task(orch.execute, run.run_id)
    return {"run_id": run.run_id, "state": run.state.value, "requested_stages": run.requested_stages}


@router.get("")
def list_runs(
    limit: int = Query(default=50, ge=1, le=500),
    state: Optional[RunState] = None,
    orch: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    runs = orch.registry.list(limit=limit, state=state)
    return {"runs": [run_summary(r) for r in runs], "count": len(runs)}


@router.get("/{run_id}")
def get_run(run_id: str, orch: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    run = orch.registry.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="run_not_found")
    return run.to_dict()


@router.get("/{run_id}/events")
def get_run_events(run_id: str, orch: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    if orch.registry.get(run_id) is None:
        raise HTTPException(status_code=404, detail="run_not_found")
    return {"run_id": run_id, "events": orch.registry.history(run_id)}


@router.post("/{run_id}/cancel")
def cancel_run(run_id: str, orch: PipelineOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    try:
        run = orch.cancel(run_id)
    except ShipyardError as e:
        raise_http(e)
    return {"run_id": run.run_id, "state": run.state.value, "cancel_requested": run.cancel_requested}


@router.post("/{run_id}/retry", status_code=202)
def retry_run(
    run_id: str,
    background_tasks: BackgroundTasks,
    orch: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        run = orch.retry(run_id)
    except ShipyardError as e:
        raise_http(e)
    background_tasks.add_task(orch.execute, run.run_id)
    return {"run_id": run.run_id, "state": run.state.value, "retry_of": run.retry_of}
