from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query

from shipyard.core.observability.audit import read_audit
from shipyard.settings import get_settings

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/log")
def audit_log(
    limit: int = Query(default=100, ge=1, le=1000),
    type: Optional[str] = Query(default=None, description="only entries of this event type"),
) -> Dict[str, Any]:
    entries = read_audit(get_settings().workspace_root, limit=limit, event_type=type)
    return {"entries": entries, "count": len(entries)}
