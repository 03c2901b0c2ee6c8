from __future__ import annotations

import uuid

from fastapi import APIRouter
from starlette.responses import JSONResponse

from shipyard.core.errors import PipelineDefinitionError
from shipyard.core.pipeline.orchestrator import load_definition
from shipyard.settings import get_settings

router = APIRouter()


@router.get("/api/v1/health/live")
def liveness():
    return {"status": "alive"}


@router.get("/api/v1/health/ready")
def readiness():
    """
    Ready when the workspace state directory is writable and the
    pipeline definition loads.
    """
    s = get_settings()
    problems: list[str] = []

    try:
        s.state_dir.mkdir(parents=True, exist_ok=True)
        probe = s.state_dir / f".ready-{uuid.uuid4().hex}.tmp"
        probe.write_text("ok", encoding="utf-8")
        probe.unlink()
    except OSError as e:
        problems.append(f"workspace_not_writable:{type(e).__name__}")

    try:
        load_definition(s)
    except PipelineDefinitionError as e:
        problems.append(f"pipeline_invalid:{e}")

    if problems:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "problems": problems},
        )

    return {"status": "ready", "env": s.env}
