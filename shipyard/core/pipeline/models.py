from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .events import PipelineEvent


DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_iso() -> str:
    return _utc_now().isoformat().replace("+00:00", "Z")


def parse_iso(ts: Optional[str]) -> Optional[datetime]:
    if not ts:
        return None
    t = ts.strip()
    if t.endswith("Z"):
        t = t[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(t)
    except ValueError:
        return None


class TriggerKind(str, Enum):
    PULL_REQUEST = "pull_request"
    PUSH = "push"
    RELEASE_TAG = "release_tag"
    MANUAL = "manual"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELED = "CANCELED"


class StageStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    SKIPPED = "SKIPPED"
    CANCELED = "CANCELED"


class RunState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    CANCELED = "CANCELED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class Trigger:
    kind: TriggerKind
    ref: str
    sha: str
    pr_number: Optional[int] = None
    actor: Optional[str] = None
    received_ts: str = field(default_factory=_utc_now_iso)

    @property
    def short_sha(self) -> str:
        return (self.sha or "")[:12]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ref": self.ref,
            "sha": self.sha,
            "pr_number": self.pr_number,
            "actor": self.actor,
            "received_ts": self.received_ts,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Trigger":
        return Trigger(
            kind=TriggerKind(d["kind"]),
            ref=d.get("ref") or "",
            sha=d.get("sha") or "",
            pr_number=d.get("pr_number"),
            actor=d.get("actor"),
            received_ts=d.get("received_ts") or _utc_now_iso(),
        )


@dataclass(frozen=True)
class ArtifactRef:
    """Container image reference that moves from environment to environment."""

    repository: str
    git_sha: str
    tag: str
    digest: Optional[str] = None
    release_tag: Optional[str] = None
    created_ts: str = field(default_factory=_utc_now_iso)

    @staticmethod
    def default_tag(git_sha: str, at: Optional[datetime] = None) -> str:
        ts = (at or _utc_now()).strftime("%Y%m%d%H%M%S")
        return f"{(git_sha or 'unknown')[:12]}-{ts}"

    @staticmethod
    def for_commit(repository: str, git_sha: str, *, at: Optional[datetime] = None) -> "ArtifactRef":
        return ArtifactRef(
            repository=repository,
            git_sha=git_sha,
            tag=ArtifactRef.default_tag(git_sha, at),
        )

    def image_ref(self) -> str:
        if self.digest:
            return f"{self.repository}@{self.digest}"
        return f"{self.repository}:{self.tag}"

    def identity(self) -> str:
        return self.digest or f"{self.repository}:{self.tag}"

    def with_digest(self, digest: str) -> "ArtifactRef":
        d = (digest or "").strip().lower()
        if not DIGEST_RE.match(d):
            raise ValueError(f"invalid image digest: {digest!r}")
        return replace(self, digest=d)

    def with_release_tag(self, release_tag: str) -> "ArtifactRef":
        if not release_tag:
            raise ValueError("release_tag must be non-empty")
        return replace(self, release_tag=release_tag)

    def same_artifact(self, other: "ArtifactRef") -> bool:
        return self.identity() == other.identity()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository,
            "git_sha": self.git_sha,
            "tag": self.tag,
            "digest": self.digest,
            "release_tag": self.release_tag,
            "created_ts": self.created_ts,
            "image_ref": self.image_ref(),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ArtifactRef":
        return ArtifactRef(
            repository=d["repository"],
            git_sha=d.get("git_sha") or "",
            tag=d.get("tag") or "",
            digest=d.get("digest"),
            release_tag=d.get("release_tag"),
            created_ts=d.get("created_ts") or _utc_now_iso(),
        )


@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    duration_ms: int = 0
    summary: str = ""
    output_tail: str = ""
    findings: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "summary": self.summary,
            "output_tail": self.output_tail,
            "findings": self.findings,
            "details": self.details or {},
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "StepResult":
        return StepResult(
            name=d["name"],
            status=StepStatus(d["status"]),
            exit_code=d.get("exit_code"),
            duration_ms=int(d.get("duration_ms") or 0),
            summary=d.get("summary", ""),
            output_tail=d.get("output_tail", ""),
            findings=d.get("findings"),
            details=d.get("details") or {},
        )


@dataclass
class StageResult:
    name: str
    status: StageStatus = StageStatus.PENDING
    reason: str = ""
    environment: Optional[str] = None
    gate: Dict[str, Any] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    started_ts: Optional[str] = None
    finished_ts: Optional[str] = None
    promotion: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "reason": self.reason,
            "environment": self.environment,
            "gate": self.gate or {},
            "steps": [s.to_dict() for s in self.steps],
            "started_ts": self.started_ts,
            "finished_ts": self.finished_ts,
            "promotion": self.promotion,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "StageResult":
        return StageResult(
            name=d["name"],
            status=StageStatus(d.get("status") or StageStatus.PENDING.value),
            reason=d.get("reason", ""),
            environment=d.get("environment"),
            gate=d.get("gate") or {},
            steps=[StepResult.from_dict(s) for s in d.get("steps", []) or []],
            started_ts=d.get("started_ts"),
            finished_ts=d.get("finished_ts"),
            promotion=d.get("promotion"),
        )


@dataclass
class PipelineRun:
    run_id: str
    pipeline: str
    definition_hash: str
    trigger: Trigger
    artifact: Optional[ArtifactRef]
    state: RunState
    created_ts: str
    updated_ts: str
    stages: List[StageResult] = field(default_factory=list)
    requested_stages: Optional[List[str]] = None
    cancel_requested: bool = False
    retry_of: Optional[str] = None
    last_error: Optional[str] = None
    finished_ts: Optional[str] = None
    events: List[PipelineEvent] = field(default_factory=list)

    def stage(self, name: str) -> Optional[StageResult]:
        for s in self.stages:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "definition_hash": self.definition_hash,
            "trigger": self.trigger.to_dict(),
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "state": self.state.value,
            "created_ts": self.created_ts,
            "updated_ts": self.updated_ts,
            "finished_ts": self.finished_ts,
            "stages": [s.to_dict() for s in self.stages],
            "requested_stages": self.requested_stages,
            "cancel_requested": self.cancel_requested,
            "retry_of": self.retry_of,
            "last_error": self.last_error,
            "events": [e.to_dict() for e in self.events],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "PipelineRun":
        artifact = d.get("artifact")
        return PipelineRun(
            run_id=d["run_id"],
            pipeline=d.get("pipeline", ""),
            definition_hash=d.get("definition_hash", ""),
            trigger=Trigger.from_dict(d["trigger"]),
            artifact=ArtifactRef.from_dict(artifact) if isinstance(artifact, dict) else None,
            state=RunState(d["state"]),
            created_ts=d.get("created_ts") or _utc_now_iso(),
            updated_ts=d.get("updated_ts") or _utc_now_iso(),
            finished_ts=d.get("finished_ts"),
            stages=[StageResult.from_dict(s) for s in d.get("stages", []) or []],
            requested_stages=d.get("requested_stages"),
            cancel_requested=bool(d.get("cancel_requested", False)),
            retry_of=d.get("retry_of"),
            last_error=d.get("last_error"),
            events=[PipelineEvent.from_dict(e) for e in d.get("events", []) or []],
        )
