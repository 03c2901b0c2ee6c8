"""Runs a pipeline for one trigger: plan, gate, execute, promote."""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from shipyard.core.approvals import ApprovalStore
from shipyard.core.errors import IllegalTransitionError, RunNotRetryableError, ShipyardError
from shipyard.core.observability.audit import audit_event
from shipyard.core.observability.metrics import GATE_DECISIONS_TOTAL, RUNS_TOTAL, STAGE_RUNS_TOTAL
from shipyard.core.runners import ToolRunner
from shipyard.settings import Settings, get_settings

from .definition import PipelineDefinition, StageSpec, default_pipeline, load_pipeline
from .events import PipelineEvent
from .executor import StepExecutor
from .gates import GateEvaluator, GateStatus
from .models import (
    ArtifactRef,
    PipelineRun,
    RunState,
    StageResult,
    StageStatus,
    StepStatus,
    Trigger,
    TriggerKind,
    _utc_now_iso,
)
from .promotion import PromotionController, PromotionStore
from .registry import RunRegistry
from .state_machine import RETRYABLE, is_terminal


_log = logging.getLogger("shipyard.orchestrator")

SYSTEM_OPERATOR = "shipyard"


def load_definition(settings: Optional[Settings] = None) -> PipelineDefinition:
    s = settings or get_settings()
    if s.pipeline_file is not None:
        return load_pipeline(s.pipeline_file)
    return default_pipeline(s.image)


def final_state(run: PipelineRun) -> RunState:
    statuses = [s.status for s in run.stages]
    if StageStatus.CANCELED in statuses:
        return RunState.CANCELED
    if StageStatus.FAILED in statuses:
        return RunState.FAILED
    if StageStatus.BLOCKED in statuses:
        return RunState.BLOCKED
    if StageStatus.SUCCEEDED not in statuses:
        return RunState.SKIPPED
    return RunState.SUCCEEDED


class PipelineOrchestrator:
    _env_locks: Dict[str, threading.Lock] = {}
    _env_locks_guard = threading.Lock()

    def __init__(
        self,
        definition: PipelineDefinition,
        *,
        workspace_root: Path,
        registry: Optional[RunRegistry] = None,
        promotions: Optional[PromotionController] = None,
        approvals: Optional[ApprovalStore] = None,
        executor: Optional[StepExecutor] = None,
        runners: Optional[Mapping[str, ToolRunner]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.definition = definition
        self.workspace_root = Path(workspace_root)
        self.graph = definition.graph()
        self.order: List[str] = self.graph.topological_order()
        self.registry = registry or RunRegistry(workspace_dir=self.workspace_root)
        self.promotions = promotions or PromotionController(
            definition, PromotionStore(workspace_root=self.workspace_root)
        )
        self.approvals = approvals or ApprovalStore(workspace_root=self.workspace_root)
        if executor is None:
            kwargs = {"runners": runners}
            if sleep is not None:
                kwargs["sleep"] = sleep
            executor = StepExecutor(definition, workspace_root=self.workspace_root, **kwargs)
        self.executor = executor
        self.gates = GateEvaluator(definition, promotions=self.promotions, approvals=self.approvals)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "PipelineOrchestrator":
        s = settings or get_settings()
        return cls(load_definition(s), workspace_root=s.workspace_root, **kwargs)

    # -- artifact planning ---------------------------------------------------

    def release_environment(self) -> Optional[str]:
        for name in self.order:
            spec = self.graph.nodes[name]
            if spec.environment and spec.release_tag_required():
                return spec.environment
        return None

    def resolve_artifact(self, trigger: Trigger, artifact: Optional[ArtifactRef] = None) -> ArtifactRef:
        if artifact is None and trigger.kind == TriggerKind.RELEASE_TAG:
            env = self.release_environment()
            if env is not None:
                artifact = self.promotions.find_eligible(env, trigger.sha)
                if artifact is None:
                    _log.warning("No artifact for %s eligible in %s; the release gate will hold", trigger.short_sha, env)
        if artifact is None:
            artifact = ArtifactRef.for_commit(self.definition.image, trigger.sha)
        if trigger.kind == TriggerKind.RELEASE_TAG and artifact.release_tag != trigger.ref and trigger.ref:
            artifact = artifact.with_release_tag(trigger.ref)
        return artifact

    # -- lifecycle -----------------------------------------------------------

    def start(
        self,
        trigger: Trigger,
        *,
        artifact: Optional[ArtifactRef] = None,
        stages: Optional[List[str]] = None,
        retry_of: Optional[str] = None,
    ) -> PipelineRun:
        requested = self.graph.select(stages) if stages else None
        now = _utc_now_iso()
        run = PipelineRun(
            run_id=f"run-{uuid.uuid4().hex[:16]}",
            pipeline=self.definition.name,
            definition_hash=self.definition.definition_hash(),
            trigger=trigger,
            artifact=self.resolve_artifact(trigger, artifact),
            state=RunState.PENDING,
            created_ts=now,
            updated_ts=now,
            stages=[StageResult(name=n, environment=self.graph.nodes[n].environment) for n in self.order],
            requested_stages=requested,
            retry_of=retry_of,
        )
        self.registry.create(run)
        _log.info(
            "Run %s created for %s %s@%s", run.run_id, trigger.kind.value, trigger.ref, trigger.short_sha
        )
        return run

    def run(
        self,
        trigger: Trigger,
        *,
        artifact: Optional[ArtifactRef] = None,
        stages: Optional[List[str]] = None,
    ) -> PipelineRun:
        run = self.start(trigger, artifact=artifact, stages=stages)
        return self.execute(run.run_id)

    def cancel(self, run_id: str) -> PipelineRun:
        with self.registry._lock:
            run = self.registry.require(run_id)
            if run.state == RunState.CANCELED:
                return run
            if is_terminal(run.state):
                raise IllegalTransitionError(
                    f"run {run_id} already finished ({run.state.value})",
                    details={"run_id": run_id, "state": run.state.value},
                )

            run.cancel_requested = True
            run.events.append(PipelineEvent.mk("CancelRequested", run_id))
            if run.state == RunState.PENDING:
                for s in run.stages:
                    s.status = StageStatus.CANCELED
                    s.reason = "run canceled"
                run.finished_ts = _utc_now_iso()
            self.registry.upsert(run)

            if run.state == RunState.PENDING:
                run = self.registry.transition(run_id=run_id, dst=RunState.CANCELED, message="canceled before start")
                RUNS_TOTAL.labels(trigger=run.trigger.kind.value, state=run.state.value).inc()
        _log.info("Cancel requested for run %s", run_id)
        return run

    def retry(self, run_id: str) -> PipelineRun:
        prev = self.registry.require(run_id)
        if prev.state not in RETRYABLE:
            raise RunNotRetryableError(
                f"run {run_id} in state {prev.state.value} cannot be retried",
                details={"run_id": run_id, "state": prev.state.value},
            )
        run = self.start(prev.trigger, artifact=prev.artifact, stages=prev.requested_stages, retry_of=run_id)
        _log.info("Run %s retries %s", run.run_id, run_id)
        return run

    # -- execution -----------------------------------------------------------

    def _cancel_requested(self, run_id: str) -> bool:
        rec = self.registry.get(run_id)
        return bool(rec and rec.cancel_requested)

    def _persist(self, run: PipelineRun) -> None:
        with self.registry._lock:
            latest = self.registry.get(run.run_id)
            if latest is not None and latest.cancel_requested:
                run.cancel_requested = True
                if not any(e.event_type == "CancelRequested" for e in run.events):
                    run.events.extend(e for e in latest.events if e.event_type == "CancelRequested")
            run.updated_ts = _utc_now_iso()
            self.registry.upsert(run)

    def _env_lock(self, environment: str) -> threading.Lock:
        with self._env_locks_guard:
            lock = self._env_locks.get(environment)
            if lock is None:
                lock = self._env_locks[environment] = threading.Lock()
            return lock

    def execute(self, run_id: str) -> PipelineRun:
        run = self.registry.require(run_id)
        if is_terminal(run.state):
            return run
        if run.cancel_requested:
            return self.cancel(run_id)

        run = self.registry.transition(run_id=run_id, dst=RunState.RUNNING, message="started")
        try:
            self._execute_stages(run)
        except Exception as e:
            _log.exception("Run %s failed unexpectedly", run_id)
            run.last_error = f"{type(e).__name__}: {e}"
            for s in run.stages:
                if s.status in (StageStatus.PENDING, StageStatus.RUNNING):
                    s.status = StageStatus.FAILED if s.status == StageStatus.RUNNING else StageStatus.SKIPPED
                    s.reason = s.reason or "run aborted"
            self._persist(run)
            return self._finish(run, RunState.FAILED, message="internal error")

        return self._finish(run, final_state(run))

    def _finish(self, run: PipelineRun, state: RunState, *, message: str = "") -> PipelineRun:
        run.finished_ts = _utc_now_iso()
        self._persist(run)
        run = self.registry.transition(run_id=run.run_id, dst=state, message=message or state.value.lower())
        RUNS_TOTAL.labels(trigger=run.trigger.kind.value, state=state.value).inc()
        _log.info("Run %s finished: %s", run.run_id, state.value)
        audit_event(
            "run.completed",
            workspace_root=self.workspace_root,
            actor=run.trigger.actor,
            run_id=run.run_id,
            artifact=run.artifact.image_ref() if run.artifact else None,
            extra={"state": state.value, "trigger": run.trigger.kind.value, "ref": run.trigger.ref},
        )
        return run

    def _execute_stages(self, run: PipelineRun) -> None:
        results: Dict[str, StageResult] = {}

        for name in self.order:
            spec = self.graph.nodes[name]
            result = run.stage(name)
            if result is None:
                result = StageResult(name=name, environment=spec.environment)
                run.stages.append(result)

            if run.cancel_requested or self._cancel_requested(run.run_id):
                run.cancel_requested = True
                result.status = StageStatus.CANCELED
                result.reason = "run canceled"
                results[name] = result
                continue

            decision = self.gates.evaluate(
                spec, run.trigger, run.artifact, results, requested_stages=run.requested_stages
            )
            result.gate = decision.to_dict()
            GATE_DECISIONS_TOTAL.labels(stage=name, decision=decision.status.value, code=decision.code).inc()
            run.events.append(PipelineEvent.mk("GateEvaluated", run.run_id, stage=name, payload=decision.to_dict()))

            if decision.status == GateStatus.SKIP:
                result.status = StageStatus.SKIPPED
                result.reason = decision.reason
                run.events.append(PipelineEvent.mk("StageSkipped", run.run_id, stage=name, payload={"code": decision.code}))
            elif decision.status == GateStatus.BLOCK:
                result.status = StageStatus.BLOCKED
                result.reason = decision.reason
                _log.warning("Stage %s blocked in run %s: %s", name, run.run_id, decision.reason)
                run.events.append(PipelineEvent.mk("StageBlocked", run.run_id, stage=name, payload={"code": decision.code}))
            else:
                self._run_stage(run, spec, result)

            STAGE_RUNS_TOTAL.labels(stage=name, status=result.status.value).inc()
            results[name] = result
            self._persist(run)

    def _run_stage(self, run: PipelineRun, spec: StageSpec, result: StageResult) -> None:
        result.status = StageStatus.RUNNING
        result.started_ts = _utc_now_iso()
        run.events.append(PipelineEvent.mk("StageStarted", run.run_id, stage=spec.name))
        self._persist(run)
        _log.info("Stage %s started in run %s", spec.name, run.run_id)

        artifact = run.artifact or ArtifactRef.for_commit(self.definition.image, run.trigger.sha)

        def should_cancel() -> bool:
            return self._cancel_requested(run.run_id)

        if spec.environment:
            with self._env_lock(spec.environment):
                steps, artifact = self.executor.run_stage(
                    spec, artifact, run_id=run.run_id, should_cancel=should_cancel, on_event=run.events.append
                )
                self._record_deployment(run, spec, steps, artifact)
        else:
            steps, artifact = self.executor.run_stage(
                spec, artifact, run_id=run.run_id, should_cancel=should_cancel, on_event=run.events.append
            )

        run.artifact = artifact
        result.steps = steps
        statuses = {s.status for s in steps}
        if StepStatus.CANCELED in statuses:
            result.status = StageStatus.CANCELED
            result.reason = "run canceled"
            run.cancel_requested = True
        elif StepStatus.FAILED in statuses:
            failed = next(s for s in steps if s.status == StepStatus.FAILED)
            result.status = StageStatus.FAILED
            result.reason = f"step '{failed.name}' failed: {failed.summary}"
        else:
            result.status = StageStatus.SUCCEEDED
            result.reason = "all steps passed"
        result.finished_ts = _utc_now_iso()

        self._maybe_promote(run, spec, result)
        run.events.append(
            PipelineEvent.mk("StageCompleted", run.run_id, stage=spec.name, payload={"status": result.status.value})
        )
        _log.info("Stage %s %s in run %s", spec.name, result.status.value.lower(), run.run_id)

    def _record_deployment(self, run: PipelineRun, spec: StageSpec, steps, artifact: ArtifactRef) -> None:
        if not spec.has_deploy():
            return
        deployed = any(
            st.status == StepStatus.SUCCEEDED and step.kind == "deploy" for st, step in zip(steps, spec.steps)
        )
        if not deployed or not spec.environment:
            return
        self.promotions.record_deployment(spec.environment, artifact, run_id=run.run_id)
        run.events.append(
            PipelineEvent.mk(
                "ArtifactDeployed",
                run.run_id,
                stage=spec.name,
                payload={"environment": spec.environment, "image": artifact.image_ref()},
            )
        )

    def _maybe_promote(self, run: PipelineRun, spec: StageSpec, result: StageResult) -> None:
        if not spec.environment or not spec.promote:
            return
        decision = self.promotions.decide(spec, result, run.artifact)
        result.promotion = {"decision": decision.to_dict()}
        if not decision.advance:
            if result.status == StageStatus.SUCCEEDED and decision.to_env:
                run.events.append(
                    PipelineEvent.mk("PromotionHeld", run.run_id, stage=spec.name, payload=decision.to_dict())
                )
            return

        try:
            record = self.promotions.promote(
                run.artifact,
                decision.from_env,
                decision.to_env,
                operator=SYSTEM_OPERATOR,
                run_id=run.run_id,
            )
        except ShipyardError as e:
            result.promotion["error"] = e.to_dict()
            run.events.append(
                PipelineEvent.mk(
                    "PromotionHeld",
                    run.run_id,
                    stage=spec.name,
                    payload={**decision.to_dict(), "advance": False, "reason": str(e)},
                )
            )
            return

        result.promotion["record"] = record.to_dict()
        run.events.append(
            PipelineEvent.mk("ArtifactPromoted", run.run_id, stage=spec.name, payload=record.to_dict())
        )
