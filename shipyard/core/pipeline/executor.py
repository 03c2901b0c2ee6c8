from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from shipyard.core.errors import ManifestUpdateError, ScanReportError
from shipyard.core.gitops import ManifestUpdater, SyncWatcher
from shipyard.core.observability.metrics import STEP_DURATION_SECONDS
from shipyard.core.runners import RUNNERS, ToolOutcome, ToolRunner
from shipyard.core.scanners import evaluate_scan, parse_report
from shipyard.settings import get_settings

from .definition import PipelineDefinition, StageSpec, StepSpec
from .events import PipelineEvent
from .models import ArtifactRef, StepResult, StepStatus


_log = logging.getLogger("shipyard.executor")

OUTPUT_TAIL_CHARS = 4000

_VAR_RE = re.compile(r"\$\{(\w+)\}|\$(\w+)")
_DIGEST_IN_OUTPUT_RE = re.compile(r"sha256:[0-9a-f]{64}")


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    text = text or ""
    return text[-limit:] if len(text) > limit else text


def step_variables(
    artifact: ArtifactRef,
    *,
    stage: StageSpec,
    run_id: Optional[str] = None,
) -> Dict[str, str]:
    return {
        "IMAGE": artifact.repository,
        "IMAGE_REF": artifact.image_ref(),
        "TAG": artifact.tag,
        "DIGEST": artifact.digest or "",
        "GIT_SHA": artifact.git_sha,
        "SHORT_SHA": (artifact.git_sha or "")[:12],
        "RELEASE_TAG": artifact.release_tag or "",
        "ENVIRONMENT": stage.environment or "",
        "STAGE": stage.name,
        "RUN_ID": run_id or "",
    }


def substitute(value: str, variables: Mapping[str, str]) -> str:
    """Replace `$NAME` / `${NAME}` for known names; anything else is left alone."""

    def _sub(m: "re.Match[str]") -> str:
        name = m.group(1) or m.group(2)
        return variables[name] if name in variables else m.group(0)

    return _VAR_RE.sub(_sub, value)


EventSink = Callable[[PipelineEvent], None]


class StepExecutor:
    """Runs a stage's steps in order and stops at the first failure."""

    def __init__(
        self,
        definition: PipelineDefinition,
        *,
        workspace_root: Path,
        runners: Optional[Mapping[str, ToolRunner]] = None,
        manifest_updater: Optional[ManifestUpdater] = None,
        step_timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.definition = definition
        self.workspace_root = Path(workspace_root)
        self.runners = runners if runners is not None else RUNNERS
        self.step_timeout_seconds = step_timeout_seconds or get_settings().step_timeout_seconds
        self._sleep = sleep

        if manifest_updater is None:
            g = definition.gitops
            repo_root = Path(g.repo_path)
            if not repo_root.is_absolute():
                repo_root = self.workspace_root / repo_root
            manifest_updater = ManifestUpdater(
                repo_root=repo_root,
                manifest_path=g.manifest_path,
                container=g.container,
                commit=g.commit,
                author=g.author,
            )
        self.manifest_updater = manifest_updater

    def run_stage(
        self,
        stage: StageSpec,
        artifact: ArtifactRef,
        *,
        cwd: Optional[Path] = None,
        run_id: Optional[str] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        on_event: Optional[EventSink] = None,
    ) -> Tuple[List[StepResult], ArtifactRef]:
        cwd = Path(cwd or self.workspace_root)
        results: List[StepResult] = []
        stop_reason: Optional[StepStatus] = None

        for step in stage.steps:
            if stop_reason is None and should_cancel is not None and should_cancel():
                stop_reason = StepStatus.CANCELED

            if stop_reason == StepStatus.CANCELED:
                results.append(StepResult(name=step.name, status=StepStatus.CANCELED, summary="canceled"))
                continue
            if stop_reason == StepStatus.FAILED:
                results.append(StepResult(name=step.name, status=StepStatus.SKIPPED, summary="previous step failed"))
                continue

            self._emit(on_event, "StepStarted", run_id, stage, step, {"kind": step.kind})
            start = time.monotonic()
            try:
                result, artifact = self._run_step(stage, step, artifact, cwd=cwd, run_id=run_id, should_cancel=should_cancel)
            except Exception as e:
                _log.exception("Step %s/%s raised", stage.name, step.name)
                result = StepResult(name=step.name, status=StepStatus.FAILED, summary=f"error: {e}")
            if not result.duration_ms:
                result.duration_ms = int((time.monotonic() - start) * 1000)

            STEP_DURATION_SECONDS.labels(stage=stage.name, step=step.name, status=result.status.value).observe(
                result.duration_ms / 1000.0
            )
            results.append(result)

            if result.status == StepStatus.SUCCEEDED:
                _log.info("Step %s/%s succeeded: %s", stage.name, step.name, result.summary)
                self._emit(on_event, "StepCompleted", run_id, stage, step, {"summary": result.summary})
            else:
                _log.warning("Step %s/%s %s: %s", stage.name, step.name, result.status.value.lower(), result.summary)
                self._emit(
                    on_event,
                    "StepFailed",
                    run_id,
                    stage,
                    step,
                    {"status": result.status.value, "summary": result.summary, "exit_code": result.exit_code},
                )
                stop_reason = StepStatus.CANCELED if result.status == StepStatus.CANCELED else StepStatus.FAILED

        return results, artifact

    # -- step kinds --------------------------------------------------------

    def _run_step(
        self,
        stage: StageSpec,
        step: StepSpec,
        artifact: ArtifactRef,
        *,
        cwd: Path,
        run_id: Optional[str],
        should_cancel: Optional[Callable[[], bool]],
    ) -> Tuple[StepResult, ArtifactRef]:
        variables = step_variables(artifact, stage=stage, run_id=run_id)
        if step.kind == "deploy":
            return self._deploy(stage, step, artifact), artifact

        runner = self.runners.get(step.runner)
        if runner is None:
            return StepResult(name=step.name, status=StepStatus.FAILED, summary=f"unknown runner: {step.runner}"), artifact

        command = [substitute(a, variables) for a in step.command]
        env = {k: substitute(v, variables) for k, v in step.env.items()}
        timeout = float(step.timeout_seconds or self.step_timeout_seconds)

        if step.kind == "sync_wait":
            return self._sync_wait(step, runner, command, env, variables, cwd, timeout, should_cancel), artifact

        if step.kind == "scan" and step.report_path:
            report = cwd / substitute(step.report_path, variables)
            if report.exists():
                report.unlink()

        outcome = runner.run(
            command,
            cwd=cwd,
            env=env,
            timeout_seconds=timeout,
            image=step.image,
            workdir=step.workdir,
        )

        if step.kind == "scan":
            return self._scan(step, outcome, cwd, variables), artifact
        return self._command(step, outcome, artifact)

    def _command(self, step: StepSpec, outcome: ToolOutcome, artifact: ArtifactRef) -> Tuple[StepResult, ArtifactRef]:
        result = StepResult(
            name=step.name,
            status=StepStatus.SUCCEEDED,
            exit_code=outcome.exit_code,
            duration_ms=outcome.duration_ms,
            output_tail=_tail(outcome.output),
        )
        if outcome.timed_out:
            result.status = StepStatus.FAILED
            result.summary = f"timed out after {step.timeout_seconds or self.step_timeout_seconds:g}s"
            return result, artifact
        if outcome.exit_code != 0:
            result.status = StepStatus.FAILED
            result.summary = f"exit code {outcome.exit_code}"
            return result, artifact

        result.summary = "ok"
        if step.captures_digest:
            digests = _DIGEST_IN_OUTPUT_RE.findall(outcome.output)
            if not digests:
                result.status = StepStatus.FAILED
                result.summary = "no image digest found in output"
                return result, artifact
            artifact = artifact.with_digest(digests[-1])
            result.summary = f"digest {artifact.digest}"
            result.details["digest"] = artifact.digest
        return result, artifact

    def _scan(self, step: StepSpec, outcome: ToolOutcome, cwd: Path, variables: Mapping[str, str]) -> StepResult:
        result = StepResult(
            name=step.name,
            status=StepStatus.FAILED,
            exit_code=outcome.exit_code,
            duration_ms=outcome.duration_ms,
            output_tail=_tail(outcome.output),
        )
        if outcome.timed_out:
            result.summary = f"scanner timed out after {step.timeout_seconds or self.step_timeout_seconds:g}s"
            return result

        if step.report_path:
            report = cwd / substitute(step.report_path, variables)
            text = report.read_text(encoding="utf-8") if report.exists() else ""
        else:
            text = outcome.stdout

        # scanners may exit non-zero simply because they found something
        if not text.strip() and outcome.exit_code != 0:
            result.summary = f"scanner failed with exit code {outcome.exit_code}"
            return result

        try:
            summary = parse_report(step.scanner or "", text, ignore_unfixed=step.ignore_unfixed)
        except ScanReportError as e:
            result.summary = str(e)
            return result

        evaluation = evaluate_scan(summary, step.fail_on)
        result.findings = summary.to_dict(fail_on=step.fail_on)
        result.summary = evaluation.reason
        if evaluation.passed:
            result.status = StepStatus.SUCCEEDED
        return result

    def _deploy(self, stage: StageSpec, step: StepSpec, artifact: ArtifactRef) -> StepResult:
        image = artifact.image_ref()
        try:
            update = self.manifest_updater.update(
                environment=stage.environment or "",
                image=image,
                message=f"deploy({stage.environment}): {image} [{artifact.git_sha[:12]}]",
            )
        except ManifestUpdateError as e:
            return StepResult(name=step.name, status=StepStatus.FAILED, summary=str(e), details=e.details)
        return StepResult(
            name=step.name,
            status=StepStatus.SUCCEEDED,
            summary=f"{stage.environment} -> {image}" + ("" if update.changed else " (unchanged)"),
            details=update.to_dict(),
        )

    def _sync_wait(
        self,
        step: StepSpec,
        runner: ToolRunner,
        command: List[str],
        env: Dict[str, str],
        variables: Mapping[str, str],
        cwd: Path,
        timeout: float,
        should_cancel: Optional[Callable[[], bool]],
    ) -> StepResult:
        expect = substitute(step.expect or "$IMAGE_REF", variables)
        watcher = SyncWatcher(runner, sleep=self._sleep)
        sync = watcher.wait(
            command,
            expect=expect,
            cwd=cwd,
            timeout_seconds=timeout,
            interval_seconds=step.poll_interval_seconds,
            env=env,
            image=step.image,
            workdir=step.workdir,
            should_cancel=should_cancel,
        )
        if sync.canceled:
            status = StepStatus.CANCELED
        else:
            status = StepStatus.SUCCEEDED if sync.synced else StepStatus.FAILED
        return StepResult(
            name=step.name,
            status=status,
            duration_ms=sync.elapsed_ms,
            summary=sync.reason,
            output_tail=_tail(sync.last_output),
            details=sync.to_dict(),
        )

    @staticmethod
    def _emit(
        sink: Optional[EventSink],
        event_type,
        run_id: Optional[str],
        stage: StageSpec,
        step: StepSpec,
        payload: Dict,
    ) -> None:
        if sink is None:
            return
        sink(PipelineEvent.mk(event_type, run_id or "", stage=stage.name, step=step.name, payload=payload))
