"""Stage gates.

A gate decides whether a stage may run for a given trigger and artifact.
Checks are ordinary policy functions evaluated in order; the first SKIP or
FAIL decides. A FAIL becomes BLOCK (the stage was wanted but is not
allowed), a SKIP means the stage does not apply to this run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from shipyard.core.policy import PolicyEngine, PolicyResult, PolicyStatus

from .definition import PipelineDefinition, StageSpec
from .models import ArtifactRef, StageResult, StageStatus, Trigger, TriggerKind


class GateStatus(str, Enum):
    ALLOW = "ALLOW"
    SKIP = "SKIP"
    BLOCK = "BLOCK"


# skip codes that propagate to downstream stages
UPSTREAM_FAILED = "upstream_failed"
UPSTREAM_BLOCKED = "upstream_blocked"
TRIGGER_MISMATCH = "trigger_mismatch"


@dataclass(frozen=True)
class GateDecision:
    status: GateStatus
    code: str
    reason: str
    checks: List[PolicyResult] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.status == GateStatus.ALLOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "code": self.code,
            "reason": self.reason,
            "checks": [c.to_dict() for c in self.checks],
        }


def policy_trigger_matches(ctx: Dict[str, Any]) -> Optional[PolicyResult]:
    stage: StageSpec = ctx["stage"]
    trigger: Trigger = ctx["trigger"]
    requested: Optional[List[str]] = ctx.get("requested_stages")

    if trigger.kind == TriggerKind.MANUAL:
        if requested and stage.name not in requested:
            return PolicyResult(
                status=PolicyStatus.SKIP,
                code=TRIGGER_MISMATCH,
                message=f"stage '{stage.name}' was not requested",
                details={"requested": list(requested)},
            )
        return PolicyResult(PolicyStatus.PASS, "trigger", "manual trigger")

    if trigger.kind not in stage.triggers:
        return PolicyResult(
            status=PolicyStatus.SKIP,
            code=TRIGGER_MISMATCH,
            message=f"stage '{stage.name}' does not run on {trigger.kind.value}",
            details={"trigger": trigger.kind.value, "accepts": [t.value for t in stage.triggers]},
        )

    if trigger.kind in (TriggerKind.PUSH, TriggerKind.PULL_REQUEST) and not stage.matches_branch(trigger.ref):
        return PolicyResult(
            status=PolicyStatus.SKIP,
            code=TRIGGER_MISMATCH,
            message=f"branch '{trigger.ref}' does not match {stage.branches}",
            details={"ref": trigger.ref, "branches": list(stage.branches)},
        )
    return PolicyResult(PolicyStatus.PASS, "trigger", f"{trigger.kind.value} accepted")


def _not_triggered(result: Optional[StageResult]) -> bool:
    if result is None:
        return True
    return result.status == StageStatus.SKIPPED and (result.gate or {}).get("code") == TRIGGER_MISMATCH


def policy_upstream_succeeded(ctx: Dict[str, Any]) -> Optional[PolicyResult]:
    stage: StageSpec = ctx["stage"]
    defn: PipelineDefinition = ctx["definition"]
    upstream: Mapping[str, StageResult] = ctx.get("upstream") or {}
    artifact: Optional[ArtifactRef] = ctx.get("artifact")
    promotions = ctx.get("promotions")

    warnings: List[str] = []
    for dep in stage.depends_on:
        r = upstream.get(dep)

        if r is not None and r.status == StageStatus.SUCCEEDED:
            continue

        if r is not None and r.status in (StageStatus.FAILED, StageStatus.CANCELED):
            return PolicyResult(
                PolicyStatus.SKIP, UPSTREAM_FAILED, f"upstream stage '{dep}' {r.status.value.lower()}", {"stage": dep}
            )
        if r is not None and r.status == StageStatus.BLOCKED:
            return PolicyResult(PolicyStatus.SKIP, UPSTREAM_BLOCKED, f"upstream stage '{dep}' blocked", {"stage": dep})
        if r is not None and r.status == StageStatus.SKIPPED:
            code = (r.gate or {}).get("code")
            if code in (UPSTREAM_FAILED, UPSTREAM_BLOCKED):
                return PolicyResult(PolicyStatus.SKIP, code, f"upstream stage '{dep}' skipped ({code})", {"stage": dep})

        if not _not_triggered(r):
            # pending or running upstream; the orchestrator never gets here
            return PolicyResult(PolicyStatus.SKIP, UPSTREAM_FAILED, f"upstream stage '{dep}' did not finish", {"stage": dep})

        dep_spec = defn.stage(dep)
        if dep_spec is None or not dep_spec.environment:
            warnings.append(dep)
            continue

        # satisfied by an earlier run that promoted this artifact forward
        target_env = stage.environment or dep_spec.environment
        if artifact is None or promotions is None or not promotions.is_eligible(target_env, artifact):
            return PolicyResult(
                status=PolicyStatus.FAIL,
                code="artifact_not_promoted",
                message=f"artifact has not been promoted to '{target_env}' (upstream '{dep}' did not run)",
                details={"stage": dep, "environment": target_env, "artifact": artifact.identity() if artifact else None},
            )

    if warnings:
        return PolicyResult(
            status=PolicyStatus.WARN,
            code="upstream_not_run",
            message=f"upstream stage(s) {warnings} not run here; enforced by merge protection",
            details={"stages": warnings},
        )
    return None


def matches_release_tag(defn: PipelineDefinition, tag: Optional[str]) -> bool:
    return bool(tag) and re.match(defn.release_tag_pattern, tag) is not None


def release_tag_ok(defn: PipelineDefinition, trigger: Trigger, artifact: Optional[ArtifactRef]) -> Optional[str]:
    """The matching release tag, if any."""
    candidates = []
    if trigger.kind == TriggerKind.RELEASE_TAG:
        candidates.append(trigger.ref)
    if artifact is not None and artifact.release_tag:
        candidates.append(artifact.release_tag)
    for tag in candidates:
        if matches_release_tag(defn, tag):
            return tag
    return None


def policy_release_tag(ctx: Dict[str, Any]) -> Optional[PolicyResult]:
    stage: StageSpec = ctx["stage"]
    if not stage.release_tag_required():
        return None
    defn: PipelineDefinition = ctx["definition"]
    tag = release_tag_ok(defn, ctx["trigger"], ctx.get("artifact"))
    if tag is None:
        return PolicyResult(
            status=PolicyStatus.FAIL,
            code="release_tag_required",
            message=f"stage '{stage.name}' requires a release tag matching {defn.release_tag_pattern}",
            details={"pattern": defn.release_tag_pattern},
        )
    return PolicyResult(PolicyStatus.PASS, "release_tag", f"release tag {tag}")


def policy_environment_unlocked(ctx: Dict[str, Any]) -> Optional[PolicyResult]:
    stage: StageSpec = ctx["stage"]
    promotions = ctx.get("promotions")
    if not stage.environment or promotions is None:
        return None
    lock = promotions.lock_info(stage.environment)
    if lock:
        return PolicyResult(
            status=PolicyStatus.FAIL,
            code="environment_locked",
            message=f"environment '{stage.environment}' is locked",
            details={"environment": stage.environment, **lock},
        )
    return None


def policy_approval_present(ctx: Dict[str, Any]) -> Optional[PolicyResult]:
    stage: StageSpec = ctx["stage"]
    if not stage.requires_approval:
        return None
    artifact: Optional[ArtifactRef] = ctx.get("artifact")
    approvals = ctx.get("approvals")
    approval = None
    if artifact is not None and approvals is not None:
        approval = approvals.get_approval(stage=stage.name, artifact_id=artifact.identity())
    if approval is None:
        return PolicyResult(
            status=PolicyStatus.FAIL,
            code="approval_required",
            message=f"stage '{stage.name}' requires an approval for this artifact",
            details={"stage": stage.name, "artifact": artifact.identity() if artifact else None},
        )
    return PolicyResult(
        PolicyStatus.PASS, "approval", f"approved by {approval.get('approver')}", {"approver": approval.get("approver")}
    )


GATE_POLICIES = [
    policy_trigger_matches,
    policy_upstream_succeeded,
    policy_release_tag,
    policy_environment_unlocked,
    policy_approval_present,
]


class GateEvaluator:
    def __init__(self, definition: PipelineDefinition, *, promotions=None, approvals=None):
        self.definition = definition
        self.promotions = promotions
        self.approvals = approvals
        self._engine = PolicyEngine(GATE_POLICIES, stop_on_decisive=True)

    def evaluate(
        self,
        stage: StageSpec,
        trigger: Trigger,
        artifact: Optional[ArtifactRef],
        upstream_results: Optional[Mapping[str, StageResult]] = None,
        *,
        requested_stages: Optional[List[str]] = None,
    ) -> GateDecision:
        ctx = {
            "definition": self.definition,
            "stage": stage,
            "trigger": trigger,
            "artifact": artifact,
            "upstream": upstream_results or {},
            "requested_stages": requested_stages,
            "promotions": self.promotions,
            "approvals": self.approvals,
        }
        checks = self._engine.evaluate(ctx)
        decisive = PolicyEngine.first_decisive(checks)
        if decisive is None:
            return GateDecision(GateStatus.ALLOW, "allowed", "all gate checks passed", checks)
        status = GateStatus.SKIP if decisive.status == PolicyStatus.SKIP else GateStatus.BLOCK
        return GateDecision(status, decisive.code, decisive.message, checks)
