"""Promotion of artifacts along the environment path.

Every environment keeps a small JSON state file with the artifact currently
deployed there, the artifacts promoted into it (eligible to deploy), a
bounded history and an optional lock. The first environment of the path
needs no promotion: any artifact may be deployed there.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from shipyard.core.errors import ArtifactNotDeployedError, EnvironmentLockedError, InvalidTransitionError
from shipyard.core.observability.audit import audit_event
from shipyard.core.observability.metrics import PROMOTIONS_TOTAL
from shipyard.settings import get_settings

from .definition import PipelineDefinition, StageSpec
from .models import ArtifactRef, StageResult, StageStatus, _utc_now_iso


_log = logging.getLogger("shipyard.promotion")

_ENV_RE = re.compile(r"^[a-zA-Z0-9_\-.]{1,64}$")


def _empty_state(environment: str) -> Dict[str, Any]:
    return {"environment": environment, "current": None, "eligible": [], "history": [], "lock": None}


class PromotionStore:
    """Path: <workspace>/.shipyard/environments/<env>.json"""

    _lock = threading.RLock()

    def __init__(self, *, workspace_root: Path, history_limit: Optional[int] = None):
        self.workspace_root = workspace_root
        self.history_limit = history_limit or get_settings().history_limit

    def _path(self, environment: str) -> Path:
        if not _ENV_RE.match(environment or ""):
            raise InvalidTransitionError(from_env=None, to_env=environment, reason=f"invalid environment name: {environment!r}")
        d = self.workspace_root / ".shipyard" / "environments"
        d.mkdir(parents=True, exist_ok=True)
        return d / f"{environment}.json"

    def load(self, environment: str) -> Dict[str, Any]:
        p = self._path(environment)
        if not p.exists():
            return _empty_state(environment)
        try:
            obj = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            _log.warning("Unreadable environment state %s; starting empty", p)
            return _empty_state(environment)
        state = _empty_state(environment)
        state.update(obj if isinstance(obj, dict) else {})
        return state

    def save(self, environment: str, state: Dict[str, Any]) -> None:
        with self._lock:
            p = self._path(environment)
            state["history"] = list(state.get("history") or [])[: self.history_limit]
            state["eligible"] = list(state.get("eligible") or [])[: self.history_limit]
            tmp = p.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(state, indent=2, sort_keys=True), encoding="utf-8")
            tmp.replace(p)


@dataclass(frozen=True)
class PromotionDecision:
    advance: bool
    from_env: Optional[str]
    to_env: Optional[str]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"advance": self.advance, "from_env": self.from_env, "to_env": self.to_env, "reason": self.reason}


@dataclass(frozen=True)
class PromotionRecord:
    artifact: ArtifactRef
    from_env: str
    to_env: str
    operator: str
    run_id: Optional[str] = None
    dry_run: bool = False
    promotion_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    ts: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "promotion_id": self.promotion_id,
            "artifact": self.artifact.to_dict(),
            "from_env": self.from_env,
            "to_env": self.to_env,
            "operator": self.operator,
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "ts": self.ts,
        }


class PromotionController:
    def __init__(self, definition: PipelineDefinition, store: PromotionStore):
        self.definition = definition
        self.store = store
        self.environments: List[str] = definition.graph().environments()

    # -- queries -----------------------------------------------------------

    def _index(self, environment: str) -> int:
        try:
            return self.environments.index(environment)
        except ValueError:
            return -1

    def next_environment(self, environment: str) -> Optional[str]:
        i = self._index(environment)
        if i < 0 or i + 1 >= len(self.environments):
            return None
        return self.environments[i + 1]

    def current(self, environment: str) -> Optional[ArtifactRef]:
        cur = self.store.load(environment).get("current")
        return ArtifactRef.from_dict(cur["artifact"]) if cur else None

    def is_eligible(self, environment: str, artifact: ArtifactRef) -> bool:
        if self.environments and environment == self.environments[0]:
            return True
        for entry in self.store.load(environment).get("eligible") or []:
            if ArtifactRef.from_dict(entry["artifact"]).same_artifact(artifact):
                return True
        return False

    def find_eligible(self, environment: str, git_sha: str) -> Optional[ArtifactRef]:
        """Newest artifact built from `git_sha` that may be deployed to `environment`."""
        if not git_sha:
            return None
        state = self.store.load(environment)
        entries = list(state.get("eligible") or [])
        if self.environments and environment == self.environments[0] and state.get("current"):
            entries.append(state["current"])
        for entry in entries:
            a = ArtifactRef.from_dict(entry["artifact"])
            if a.git_sha == git_sha or (len(git_sha) >= 7 and a.git_sha.startswith(git_sha)):
                return a
        return None

    def lock_info(self, environment: str) -> Optional[Dict[str, Any]]:
        return self.store.load(environment).get("lock") or None

    def history(self, environment: str, *, limit: int = 50) -> List[Dict[str, Any]]:
        return list(self.store.load(environment).get("history") or [])[: max(0, int(limit))]

    def status(self) -> List[Dict[str, Any]]:
        out = []
        for env in self.environments:
            state = self.store.load(env)
            out.append(
                {
                    "environment": env,
                    "next": self.next_environment(env),
                    "current": state.get("current"),
                    "eligible": [e["artifact"] for e in (state.get("eligible") or [])[:5]],
                    "eligible_count": len(state.get("eligible") or []),
                    "lock": state.get("lock"),
                }
            )
        return out

    # -- mutations ---------------------------------------------------------

    def record_deployment(self, environment: str, artifact: ArtifactRef, *, run_id: Optional[str] = None) -> Dict[str, Any]:
        entry = {"artifact": artifact.to_dict(), "run_id": run_id, "deployed_ts": _utc_now_iso()}
        with self.store._lock:
            state = self.store.load(environment)
            state["current"] = entry
            state["history"] = [{"action": "deployed", **entry}, *(state.get("history") or [])]
            self.store.save(environment, state)
        _log.info("Deployed %s to %s (run=%s)", artifact.image_ref(), environment, run_id)
        audit_event(
            "artifact.deployed",
            workspace_root=self.store.workspace_root,
            run_id=run_id,
            environment=environment,
            artifact=artifact.image_ref(),
        )
        return entry

    def lock(self, environment: str, *, by: str, reason: str = "") -> Dict[str, Any]:
        self._require_known(environment)
        lock = {"locked_by": by, "reason": reason, "locked_ts": _utc_now_iso()}
        with self.store._lock:
            state = self.store.load(environment)
            state["lock"] = lock
            self.store.save(environment, state)
        _log.warning("Environment %s locked by %s: %s", environment, by, reason)
        audit_event("environment.locked", workspace_root=self.store.workspace_root, actor=by, environment=environment,
                    extra={"reason": reason})
        return lock

    def unlock(self, environment: str, *, by: Optional[str] = None) -> bool:
        self._require_known(environment)
        with self.store._lock:
            state = self.store.load(environment)
            was_locked = bool(state.get("lock"))
            state["lock"] = None
            self.store.save(environment, state)
        if was_locked:
            _log.info("Environment %s unlocked", environment)
            audit_event("environment.unlocked", workspace_root=self.store.workspace_root, actor=by, environment=environment)
        return was_locked

    def decide(self, stage: StageSpec, result: StageResult, artifact: Optional[ArtifactRef]) -> PromotionDecision:
        env = stage.environment
        if result.status != StageStatus.SUCCEEDED:
            return PromotionDecision(False, env, None, f"stage {result.status.value.lower()}")
        if not env:
            return PromotionDecision(False, None, None, "stage has no environment")
        if not stage.promote:
            return PromotionDecision(False, env, None, "promotion disabled for stage")
        if artifact is None:
            return PromotionDecision(False, env, None, "no artifact")
        to_env = self.next_environment(env)
        if to_env is None:
            return PromotionDecision(False, env, None, "last environment")
        lock = self.lock_info(to_env)
        if lock:
            return PromotionDecision(False, env, to_env, f"environment '{to_env}' is locked")
        return PromotionDecision(True, env, to_env, "all checks passed")

    def _require_known(self, environment: str) -> None:
        if self._index(environment) < 0:
            raise InvalidTransitionError(from_env=None, to_env=environment, reason=f"Unknown environment: '{environment}'")

    def validate_transition(self, from_env: str, to_env: str) -> None:
        from_idx = self._index(from_env)
        if from_idx < 0:
            raise InvalidTransitionError(from_env=from_env, to_env=to_env, reason=f"Unknown source environment: '{from_env}'")
        to_idx = self._index(to_env)
        if to_idx < 0:
            raise InvalidTransitionError(from_env=from_env, to_env=to_env, reason=f"Unknown target environment: '{to_env}'")
        if to_idx <= from_idx:
            raise InvalidTransitionError(
                from_env=from_env,
                to_env=to_env,
                reason=f"Invalid direction: cannot promote backward from '{from_env}' to '{to_env}'",
            )
        if to_idx != from_idx + 1:
            skipped = self.environments[from_idx + 1 : to_idx]
            raise InvalidTransitionError(
                from_env=from_env,
                to_env=to_env,
                reason=f"Cannot skip environments: {', '.join(skipped)}",
            )

    def promote(
        self,
        artifact: ArtifactRef,
        from_env: str,
        to_env: str,
        *,
        operator: str,
        run_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> PromotionRecord:
        try:
            self.validate_transition(from_env, to_env)

            current = self.current(from_env)
            if current is None or not current.same_artifact(artifact):
                raise ArtifactNotDeployedError(
                    f"artifact {artifact.identity()} is not deployed in '{from_env}'",
                    details={
                        "environment": from_env,
                        "artifact": artifact.identity(),
                        "current": current.identity() if current else None,
                    },
                )

            lock = self.lock_info(to_env)
            if lock:
                raise EnvironmentLockedError(to_env, locked_by=lock.get("locked_by"), reason=lock.get("reason"))
        except (InvalidTransitionError, ArtifactNotDeployedError, EnvironmentLockedError) as e:
            PROMOTIONS_TOTAL.labels(from_env=from_env, to_env=to_env, result="rejected").inc()
            _log.warning("Promotion %s -> %s rejected: %s", from_env, to_env, e)
            raise

        # carry forward fields learnt after deployment (release tag)
        promoted = current if not artifact.release_tag else current.with_release_tag(artifact.release_tag)
        record = PromotionRecord(
            artifact=promoted,
            from_env=from_env,
            to_env=to_env,
            operator=operator,
            run_id=run_id,
            dry_run=dry_run,
        )
        if dry_run:
            PROMOTIONS_TOTAL.labels(from_env=from_env, to_env=to_env, result="dry_run").inc()
            return record

        entry = {"artifact": promoted.to_dict(), "run_id": run_id, "promoted_ts": record.ts, "from_env": from_env}
        with self.store._lock:
            state = self.store.load(to_env)
            eligible = [
                e for e in (state.get("eligible") or [])
                if not ArtifactRef.from_dict(e["artifact"]).same_artifact(promoted)
            ]
            state["eligible"] = [entry, *eligible]
            state["history"] = [{"action": "promoted", "operator": operator, **entry}, *(state.get("history") or [])]
            self.store.save(to_env, state)

        PROMOTIONS_TOTAL.labels(from_env=from_env, to_env=to_env, result="promoted").inc()
        _log.info("Promoted %s from %s to %s (operator=%s)", promoted.image_ref(), from_env, to_env, operator)
        audit_event(
            "artifact.promoted",
            workspace_root=self.store.workspace_root,
            actor=operator,
            run_id=run_id,
            environment=to_env,
            artifact=promoted.image_ref(),
            extra={"from_env": from_env, "promotion_id": record.promotion_id},
        )
        return record
