import pytest

from shipyard.core.errors import IllegalTransitionError, RunNotFoundError, RunNotRetryableError
from shipyard.core.observability.audit import read_audit
from shipyard.core.pipeline.models import RunState, StageStatus, StepStatus, Trigger, TriggerKind
from shipyard.core.runners import ToolOutcome

from conftest import DIGEST, IMAGE, SHA


def _push(ref="main", sha=SHA):
    return Trigger(kind=TriggerKind.PUSH, ref=ref, sha=sha, actor="dev")


def _release(tag="v1.0.0", sha=SHA):
    return Trigger(kind=TriggerKind.RELEASE_TAG, ref=tag, sha=sha, actor="release-bot")


def _statuses(run):
    return {s.name: s.status for s in run.stages}


def _events(run):
    return [e.event_type for e in run.events]


def test_push_builds_deploys_and_promotes(make_orchestrator, fake_runner, ws):
    orch = make_orchestrator()
    run = orch.run(_push())

    assert run.state == RunState.SUCCEEDED
    assert _statuses(run) == {
        "pr-validation": StageStatus.SKIPPED,
        "development": StageStatus.SUCCEEDED,
        "pre-prod": StageStatus.SUCCEEDED,
        "production": StageStatus.SKIPPED,
    }
    assert run.stage("pr-validation").gate["code"] == "trigger_mismatch"
    assert run.stage("production").gate["code"] == "trigger_mismatch"
    assert run.artifact.digest == DIGEST
    assert run.artifact.git_sha == SHA

    # build and push see the substituted tag
    build = next(c for c in fake_runner.calls if c[0] == "build")
    assert build[1] == f"{IMAGE}:{run.artifact.tag}"
    dast = next(c for c in fake_runner.calls if c[0] == "dast")
    assert dast[1] == f"{IMAGE}@{DIGEST}"

    assert orch.promotions.current("development").digest == DIGEST
    assert orch.promotions.current("pre-prod").digest == DIGEST
    assert orch.promotions.is_eligible("pre-prod", run.artifact)
    assert orch.promotions.is_eligible("production", run.artifact)
    assert orch.promotions.current("production") is None

    manifest = (ws / "deploy" / "environments" / "pre-prod" / "deployment.yaml").read_text(encoding="utf-8")
    assert f"{IMAGE}@{DIGEST}" in manifest
    assert "envoyproxy/envoy:v1.29" in manifest

    events = _events(run)
    assert events[0] == "RunCreated"
    assert events[-1] == "RunCompleted"
    assert events.count("ArtifactPromoted") == 2
    assert events.count("ArtifactDeployed") == 2

    stored = orch.registry.require(run.run_id)
    assert stored.state == RunState.SUCCEEDED
    assert stored.finished_ts

    audit_types = [e["type"] for e in read_audit(ws)]
    assert "run.completed" in audit_types


def test_release_blocks_on_approval_then_retry_succeeds(make_orchestrator, ws):
    orch = make_orchestrator()
    assert orch.run(_push()).state == RunState.SUCCEEDED

    blocked = orch.run(_release())
    assert blocked.state == RunState.BLOCKED
    prod = blocked.stage("production")
    assert prod.status == StageStatus.BLOCKED
    assert prod.gate["code"] == "approval_required"
    assert blocked.artifact.digest == DIGEST
    assert blocked.artifact.release_tag == "v1.0.0"
    assert orch.promotions.current("production") is None

    orch.approvals.save_approval(stage="production", artifact_id=DIGEST, approver="alice")
    retried = orch.execute(orch.retry(blocked.run_id).run_id)

    assert retried.retry_of == blocked.run_id
    assert retried.state == RunState.SUCCEEDED
    assert retried.stage("production").status == StageStatus.SUCCEEDED
    current = orch.promotions.current("production")
    assert current.digest == DIGEST
    assert current.release_tag == "v1.0.0"


def test_release_of_unpromoted_commit_is_blocked(make_orchestrator):
    orch = make_orchestrator()
    run = orch.run(_release(sha="f" * 40))
    assert run.state == RunState.BLOCKED
    assert run.stage("production").gate["code"] == "artifact_not_promoted"
    assert run.artifact.digest is None


def test_release_tag_must_match_pattern(make_orchestrator):
    orch = make_orchestrator()
    orch.run(_push())
    run = orch.run(_release(tag="nightly-42"))
    assert run.state == RunState.BLOCKED
    assert run.stage("production").gate["code"] == "release_tag_required"


def test_failed_step_skips_downstream(make_orchestrator, fake_runner):
    fake_runner.responses["build"] = ToolOutcome(exit_code=2, stderr="compile error")
    orch = make_orchestrator()
    run = orch.run(_push())

    assert run.state == RunState.FAILED
    dev = run.stage("development")
    assert dev.status == StageStatus.FAILED
    assert dev.reason == "step 'build' failed: exit code 2"
    assert [s.status for s in dev.steps] == [StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.SKIPPED]
    assert run.stage("pre-prod").status == StageStatus.SKIPPED
    assert run.stage("pre-prod").gate["code"] == "upstream_failed"
    assert not fake_runner.called("push")
    assert orch.promotions.current("development") is None


def test_pull_request_runs_validation_only(make_orchestrator, fake_runner):
    orch = make_orchestrator()
    run = orch.run(Trigger(kind=TriggerKind.PULL_REQUEST, ref="main", sha=SHA, pr_number=7))

    assert run.state == RunState.SUCCEEDED
    assert run.stage("pr-validation").status == StageStatus.SUCCEEDED
    sast = run.stage("pr-validation").steps[1]
    assert sast.findings["total"] == 0
    assert run.stage("development").status == StageStatus.SKIPPED
    assert not fake_runner.called("build")


def test_unmatched_branch_skips_everything(make_orchestrator, fake_runner):
    orch = make_orchestrator()
    run = orch.run(_push(ref="feature/login"))
    assert run.state == RunState.SKIPPED
    assert set(_statuses(run).values()) == {StageStatus.SKIPPED}
    assert fake_runner.calls == []


def test_manual_run_of_selected_stages(make_orchestrator, fake_runner):
    orch = make_orchestrator()
    run = orch.run(Trigger(kind=TriggerKind.MANUAL, ref="main", sha=SHA), stages=["pr-validation"])
    assert run.requested_stages == ["pr-validation"]
    assert run.stage("pr-validation").status == StageStatus.SUCCEEDED
    assert run.stage("development").gate["code"] == "trigger_mismatch"
    assert run.state == RunState.SUCCEEDED


def test_locked_environment_holds_promotion_and_blocks_stage(make_orchestrator):
    orch = make_orchestrator()
    orch.promotions.lock("pre-prod", by="oncall", reason="freeze")
    run = orch.run(_push())

    assert run.state == RunState.BLOCKED
    assert run.stage("development").status == StageStatus.SUCCEEDED
    assert run.stage("development").promotion["decision"]["advance"] is False
    assert "PromotionHeld" in _events(run)
    assert run.stage("pre-prod").gate["code"] == "environment_locked"
    assert not orch.promotions.is_eligible("pre-prod", run.artifact)


def test_cancel_pending_run(make_orchestrator, fake_runner):
    orch = make_orchestrator()
    run = orch.start(_push())
    canceled = orch.cancel(run.run_id)

    assert canceled.state == RunState.CANCELED
    assert canceled.cancel_requested is True
    assert set(_statuses(canceled).values()) == {StageStatus.CANCELED}

    # idempotent, and executing afterwards does nothing
    assert orch.cancel(run.run_id).state == RunState.CANCELED
    assert orch.execute(run.run_id).state == RunState.CANCELED
    assert fake_runner.calls == []


def test_cancel_while_running(make_orchestrator, fake_runner):
    orch = make_orchestrator()
    run = orch.start(_push())

    def build(command):
        orch.cancel(run.run_id)
        return ToolOutcome(exit_code=0, stdout="built")

    fake_runner.responses["build"] = build
    done = orch.execute(run.run_id)

    assert done.state == RunState.CANCELED
    dev = done.stage("development")
    assert dev.status == StageStatus.CANCELED
    assert [s.status for s in dev.steps] == [StepStatus.SUCCEEDED, StepStatus.CANCELED, StepStatus.CANCELED]
    assert done.stage("pre-prod").status == StageStatus.CANCELED
    assert "CancelRequested" in _events(done)
    assert not fake_runner.called("push")


def test_cancel_after_last_stage_keeps_outcome(make_orchestrator):
    orch = make_orchestrator()
    run = orch.start(_push())
    execute_stages = orch._execute_stages

    def then_cancel(r):
        execute_stages(r)
        orch.cancel(r.run_id)

    orch._execute_stages = then_cancel
    done = orch.execute(run.run_id)

    assert done.state == RunState.SUCCEEDED
    assert done.cancel_requested is True
    assert StageStatus.CANCELED not in _statuses(done).values()
    assert orch.promotions.current("pre-prod") is not None


def test_cancel_finished_run_is_rejected(make_orchestrator):
    orch = make_orchestrator()
    run = orch.run(_push())
    with pytest.raises(IllegalTransitionError):
        orch.cancel(run.run_id)


def test_retry_requires_retryable_state(make_orchestrator):
    orch = make_orchestrator()
    run = orch.run(_push())
    with pytest.raises(RunNotRetryableError):
        orch.retry(run.run_id)
    with pytest.raises(RunNotFoundError):
        orch.retry("run-missing")


def test_unexpected_error_fails_run(make_orchestrator):
    class ExplodingExecutor:
        def run_stage(self, *args, **kwargs):
            raise RuntimeError("executor exploded")

    orch = make_orchestrator()
    orch.executor = ExplodingExecutor()
    run = orch.run(_push())

    assert run.state == RunState.FAILED
    assert run.last_error == "RuntimeError: executor exploded"
    assert run.stage("development").status == StageStatus.FAILED
    assert run.stage("pre-prod").status == StageStatus.SKIPPED
