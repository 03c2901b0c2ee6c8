"""Declarative pipeline definition.

A pipeline is a list of stages; each stage declares which triggers select it,
which stages gate it, the environment it deploys to (if any) and the ordered
tool steps it runs. Definitions are loaded from YAML (or JSON) and validated
structurally before anything executes.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from shipyard.core.errors import PipelineDefinitionError
from shipyard.core.signing import canonical_sha256

from .graph import StageGraph
from .models import TriggerKind


_log = logging.getLogger("shipyard.definition")

StepKind = Literal["command", "scan", "deploy", "sync_wait"]
ScannerFormat = Literal["trivy", "grype", "sarif", "zap"]
Severity = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW", "INFO"]

DEFAULT_RELEASE_TAG_PATTERN = r"^v\d+\.\d+\.\d+$"
PRODUCTION_ENVIRONMENT = "production"


class StepSpec(BaseModel):
    name: str
    kind: StepKind = "command"
    command: List[str] = Field(default_factory=list)
    runner: str = "local"
    image: Optional[str] = None
    workdir: str = "/workspace"
    env: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None

    # command steps
    captures_digest: bool = False

    # scan steps
    scanner: Optional[ScannerFormat] = None
    report_path: Optional[str] = None
    fail_on: Severity = "HIGH"
    ignore_unfixed: bool = False

    # sync_wait steps
    expect: Optional[str] = None
    poll_interval_seconds: float = 5.0


class GitOpsConfig(BaseModel):
    repo_path: str = "deploy"
    manifest_path: str = "environments/{environment}/deployment.yaml"
    container: Optional[str] = None
    commit: bool = True
    author: str = "shipyard <shipyard@localhost>"


class StageSpec(BaseModel):
    name: str
    triggers: List[TriggerKind]
    branches: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    environment: Optional[str] = None
    promote: bool = False
    requires_approval: bool = False
    requires_release_tag: Optional[bool] = None
    steps: List[StepSpec] = Field(default_factory=list)

    def release_tag_required(self) -> bool:
        if self.requires_release_tag is not None:
            return bool(self.requires_release_tag)
        return self.environment == PRODUCTION_ENVIRONMENT

    def matches_branch(self, ref: str) -> bool:
        if not self.branches:
            return True
        return any(fnmatch.fnmatchcase(ref or "", pattern) for pattern in self.branches)

    def has_deploy(self) -> bool:
        return any(s.kind == "deploy" for s in self.steps)


class PipelineDefinition(BaseModel):
    name: str = "shipyard"
    image: str
    release_tag_pattern: str = DEFAULT_RELEASE_TAG_PATTERN
    gitops: GitOpsConfig = Field(default_factory=GitOpsConfig)
    stages: List[StageSpec] = Field(default_factory=list)

    def stage(self, name: str) -> Optional[StageSpec]:
        for s in self.stages:
            if s.name == name:
                return s
        return None

    def stage_for_environment(self, environment: str) -> Optional[StageSpec]:
        for s in self.stages:
            if s.environment == environment:
                return s
        return None

    def definition_hash(self) -> str:
        return canonical_sha256(self)

    def graph(self) -> StageGraph:
        return StageGraph.from_definition(self)


def validate_definition(defn: PipelineDefinition) -> PipelineDefinition:
    if not defn.stages:
        raise PipelineDefinitionError("pipeline defines no stages")

    try:
        re.compile(defn.release_tag_pattern)
    except re.error as e:
        raise PipelineDefinitionError(
            f"invalid release_tag_pattern: {e}",
            details={"release_tag_pattern": defn.release_tag_pattern},
        )

    seen_envs: Dict[str, str] = {}
    for stage in defn.stages:
        if not stage.name.strip():
            raise PipelineDefinitionError("stage name must be non-empty")
        if not stage.triggers:
            raise PipelineDefinitionError(f"stage '{stage.name}' declares no triggers", details={"stage": stage.name})

        if stage.environment:
            other = seen_envs.get(stage.environment)
            if other is not None:
                raise PipelineDefinitionError(
                    f"environment '{stage.environment}' is deployed by both '{other}' and '{stage.name}'",
                    details={"environment": stage.environment},
                )
            seen_envs[stage.environment] = stage.name

        step_names = set()
        for step in stage.steps:
            if step.name in step_names:
                raise PipelineDefinitionError(
                    f"duplicate step '{step.name}' in stage '{stage.name}'",
                    details={"stage": stage.name, "step": step.name},
                )
            step_names.add(step.name)

            if step.kind in ("command", "scan", "sync_wait") and not step.command:
                raise PipelineDefinitionError(
                    f"step '{stage.name}/{step.name}' requires a command",
                    details={"stage": stage.name, "step": step.name},
                )
            if step.kind == "scan" and not step.scanner:
                raise PipelineDefinitionError(
                    f"scan step '{stage.name}/{step.name}' requires a scanner format",
                    details={"stage": stage.name, "step": step.name},
                )
            if step.kind == "deploy" and not stage.environment:
                raise PipelineDefinitionError(
                    f"deploy step '{stage.name}/{step.name}' requires the stage to declare an environment",
                    details={"stage": stage.name, "step": step.name},
                )

    # duplicate stages, unknown dependencies and cycles
    defn.graph().topological_order()
    return defn


def parse_pipeline(data: object) -> PipelineDefinition:
    if not isinstance(data, dict):
        raise PipelineDefinitionError(
            f"pipeline definition must be a mapping, got {type(data).__name__}"
        )
    try:
        defn = PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise PipelineDefinitionError(
            "invalid pipeline definition",
            details={"errors": json.loads(e.json())},
        )
    return validate_definition(defn)


def load_pipeline(path: Path) -> PipelineDefinition:
    p = Path(path)
    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise PipelineDefinitionError(f"cannot read pipeline file {p}: {e}", details={"path": str(p)})

    try:
        data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(f"cannot parse pipeline file {p}: {e}", details={"path": str(p)})

    defn = parse_pipeline(data)
    _log.info("Loaded pipeline %r (%d stages) from %s", defn.name, len(defn.stages), p)
    return defn


def _sync_step(environment: str) -> StepSpec:
    return StepSpec(
        name="wait-for-sync",
        kind="sync_wait",
        command=["argocd", "app", "get", f"app-{environment}", "-o", "json"],
        timeout_seconds=600,
        poll_interval_seconds=10,
    )


def default_pipeline(image: str) -> PipelineDefinition:
    """The PR validation -> development -> pre-prod -> production pipeline."""
    defn = PipelineDefinition(
        name="devsecops",
        image=image,
        stages=[
            StageSpec(
                name="pr-validation",
                triggers=[TriggerKind.PULL_REQUEST],
                steps=[
                    StepSpec(name="lint", command=["ruff", "check", "."]),
                    StepSpec(name="unit-tests", command=["pytest", "-q"]),
                    StepSpec(
                        name="static-analysis",
                        kind="scan",
                        command=["semgrep", "scan", "--sarif", "--quiet", "."],
                        scanner="sarif",
                        fail_on="HIGH",
                    ),
                    StepSpec(
                        name="dependency-scan",
                        kind="scan",
                        command=["trivy", "fs", "--format", "json", "--scanners", "vuln", "."],
                        scanner="trivy",
                        fail_on="HIGH",
                    ),
                ],
            ),
            StageSpec(
                name="development",
                triggers=[TriggerKind.PUSH],
                branches=["main"],
                depends_on=["pr-validation"],
                environment="development",
                promote=True,
                steps=[
                    StepSpec(name="build-image", command=["docker", "build", "-t", "$IMAGE:$TAG", "."]),
                    StepSpec(
                        name="image-scan",
                        kind="scan",
                        command=["trivy", "image", "--format", "json", "$IMAGE:$TAG"],
                        scanner="trivy",
                        fail_on="HIGH",
                        ignore_unfixed=True,
                    ),
                    StepSpec(name="push-image", command=["docker", "push", "$IMAGE:$TAG"], captures_digest=True),
                    StepSpec(name="deploy", kind="deploy"),
                    _sync_step("development"),
                ],
            ),
            StageSpec(
                name="pre-prod",
                triggers=[TriggerKind.PUSH],
                branches=["main"],
                depends_on=["development"],
                environment="pre-prod",
                promote=True,
                steps=[
                    StepSpec(name="deploy", kind="deploy"),
                    _sync_step("pre-prod"),
                    StepSpec(
                        name="dynamic-scan",
                        kind="scan",
                        runner="docker",
                        image="ghcr.io/zaproxy/zaproxy:stable",
                        workdir="/zap/wrk",
                        command=["zap-baseline.py", "-t", "http://app.pre-prod.svc.cluster.local", "-J", "zap-report.json"],
                        scanner="zap",
                        report_path="zap-report.json",
                        fail_on="HIGH",
                    ),
                ],
            ),
            StageSpec(
                name="production",
                triggers=[TriggerKind.RELEASE_TAG],
                depends_on=["pre-prod"],
                environment=PRODUCTION_ENVIRONMENT,
                requires_approval=True,
                steps=[
                    StepSpec(name="deploy", kind="deploy"),
                    _sync_step(PRODUCTION_ENVIRONMENT),
                ],
            ),
        ],
    )
    return validate_definition(defn)
