from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from shipyard.core.errors import RunNotFoundError

from .events import PipelineEvent
from .models import PipelineRun, RunState, _utc_now_iso
from .state_machine import ensure_transition


_RUN_ID_RE = re.compile(r"^[a-zA-Z0-9_\-]{1,128}$")


def _runs_dir(workspace_dir: Path) -> Path:
    d = workspace_dir / ".shipyard" / "runs"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _run_path(workspace_dir: Path, run_id: str) -> Path:
    if not _RUN_ID_RE.match(run_id or ""):
        raise RunNotFoundError(f"invalid run_id: {run_id!r}")
    return _runs_dir(workspace_dir) / f"{run_id}.json"


class RunRegistry:
    """File-backed pipeline run registry.

    Path: <workspace>/.shipyard/runs/{run_id}.json
    """

    _lock = threading.RLock()

    def __init__(self, *, workspace_dir: Path):
        self.workspace_dir = workspace_dir

    def get(self, run_id: str) -> Optional[PipelineRun]:
        try:
            p = _run_path(self.workspace_dir, run_id)
        except RunNotFoundError:
            return None
        if not p.exists():
            return None
        obj = json.loads(p.read_text(encoding="utf-8"))
        return PipelineRun.from_dict(obj)

    def require(self, run_id: str) -> PipelineRun:
        rec = self.get(run_id)
        if rec is None:
            raise RunNotFoundError(f"run not found: {run_id}", details={"run_id": run_id})
        return rec

    def upsert(self, run: PipelineRun) -> None:
        with self._lock:
            p = _run_path(self.workspace_dir, run.run_id)
            tmp = p.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(run.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
            tmp.replace(p)

    def create(self, run: PipelineRun) -> PipelineRun:
        with self._lock:
            if self.get(run.run_id) is not None:
                raise ValueError(f"run already exists: {run.run_id}")
            run.events.append(
                PipelineEvent.mk("RunCreated", run.run_id, payload={"trigger": run.trigger.to_dict()})
            )
            self.upsert(run)
            return run

    def transition(
        self,
        *,
        run_id: str,
        dst: RunState,
        message: str = "",
        data: Optional[Dict[str, Any]] = None,
    ) -> PipelineRun:
        with self._lock:
            rec = self.require(run_id)
            ensure_transition(rec.state, dst)

            now = _utc_now_iso()
            rec.state = dst
            rec.updated_ts = now
            rec.events.append(
                PipelineEvent.mk(
                    "RunStarted" if dst == RunState.RUNNING else "RunCompleted",
                    run_id,
                    payload={"state": dst.value, "message": message, **(data or {})},
                )
            )
            self.upsert(rec)
            return rec

    def update_fields(self, *, run_id: str, fields: Dict[str, Any]) -> PipelineRun:
        with self._lock:
            rec = self.require(run_id)
            for k, v in (fields or {}).items():
                if not hasattr(rec, k):
                    raise AttributeError(f"PipelineRun has no field: {k}")
                setattr(rec, k, v)
            rec.updated_ts = _utc_now_iso()
            self.upsert(rec)
            return rec

    def list(self, *, limit: int = 50, state: Optional[RunState] = None) -> List[PipelineRun]:
        runs: List[PipelineRun] = []
        for p in _runs_dir(self.workspace_dir).glob("*.json"):
            try:
                run = PipelineRun.from_dict(json.loads(p.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError):
                continue
            if state is not None and run.state != state:
                continue
            runs.append(run)
        runs.sort(key=lambda r: (r.created_ts, r.run_id), reverse=True)
        return runs[: max(0, int(limit))]

    def history(self, run_id: str) -> List[Dict[str, Any]]:
        rec = self.get(run_id)
        if rec is None:
            return []
        return [e.to_dict() for e in rec.events]
