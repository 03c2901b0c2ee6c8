import json
import os
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from shipyard.api.main import app
from shipyard.core.pipeline.definition import parse_pipeline
from shipyard.core.pipeline.orchestrator import PipelineOrchestrator
from shipyard.core.runners import LocalRunner, ToolOutcome, ToolRunner


IMAGE = "registry.local/shipyard/app"
DIGEST = "sha256:" + "ab" * 32
SHA = "0123456789abcdef0123456789abcdef01234567"

EMPTY_SARIF = json.dumps({"version": "2.1.0", "runs": [{"tool": {"driver": {"name": "semgrep"}}, "results": []}]})

MANIFEST = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: app
spec:
  template:
    spec:
      containers:
        - name: app
          image: registry.local/shipyard/app:old
        - name: sidecar
          image: envoyproxy/envoy:v1.29
"""


class FakeRunner(ToolRunner):
    """Scripted runner keyed by the first command argument."""

    name = "fake"

    def __init__(self, responses: Optional[Dict[str, object]] = None):
        self.responses: Dict[str, object] = {
            "push": ToolOutcome(exit_code=0, stdout=f"latest: digest: {DIGEST} size: 1573"),
            "sast": ToolOutcome(exit_code=0, stdout=EMPTY_SARIF),
        }
        self.responses.update(responses or {})
        self.calls: List[List[str]] = []

    def run(self, command, *, cwd, env=None, timeout_seconds=None, image=None, workdir="/workspace"):
        self.calls.append(list(command))
        r = self.responses.get(command[0])
        if isinstance(r, list):
            r = r.pop(0) if len(r) > 1 else r[0]
        if callable(r):
            r = r(command)
        return r or ToolOutcome(exit_code=0, stdout="ok")

    def called(self, name: str) -> bool:
        return any(c and c[0] == name for c in self.calls)


@pytest.fixture(scope="session", autouse=True)
def _force_test_env():
    os.environ.setdefault("SHIPYARD_ENV", "dev")


@pytest.fixture()
def ws(tmp_path: Path, monkeypatch) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    monkeypatch.setenv("SHIPYARD_WORKSPACE_ROOT", str(root))
    monkeypatch.delenv("SHIPYARD_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("SHIPYARD_PIPELINE_FILE", raising=False)
    for env in ("development", "pre-prod", "production"):
        p = root / "deploy" / "environments" / env / "deployment.yaml"
        p.parent.mkdir(parents=True)
        p.write_text(MANIFEST, encoding="utf-8")
    return root


@pytest.fixture()
def mini_pipeline() -> dict:
    return {
        "name": "mini",
        "image": IMAGE,
        "gitops": {"repo_path": "deploy", "commit": False},
        "stages": [
            {
                "name": "pr-validation",
                "triggers": ["pull_request"],
                "steps": [
                    {"name": "lint", "runner": "fake", "command": ["lint"]},
                    {"name": "sast", "kind": "scan", "runner": "fake", "command": ["sast"], "scanner": "sarif"},
                ],
            },
            {
                "name": "development",
                "triggers": ["push"],
                "branches": ["main"],
                "depends_on": ["pr-validation"],
                "environment": "development",
                "promote": True,
                "steps": [
                    {"name": "build", "runner": "fake", "command": ["build", "$IMAGE:$TAG"]},
                    {"name": "push", "runner": "fake", "command": ["push", "$IMAGE:$TAG"], "captures_digest": True},
                    {"name": "deploy", "kind": "deploy"},
                ],
            },
            {
                "name": "pre-prod",
                "triggers": ["push"],
                "branches": ["main"],
                "depends_on": ["development"],
                "environment": "pre-prod",
                "promote": True,
                "steps": [
                    {"name": "deploy", "kind": "deploy"},
                    {"name": "dast", "runner": "fake", "command": ["dast", "$IMAGE_REF"]},
                ],
            },
            {
                "name": "production",
                "triggers": ["release_tag"],
                "depends_on": ["pre-prod"],
                "environment": "production",
                "requires_approval": True,
                "steps": [{"name": "deploy", "kind": "deploy"}],
            },
        ],
    }


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def make_orchestrator(ws, mini_pipeline, fake_runner):
    def _make(definition=None) -> PipelineOrchestrator:
        defn = definition or parse_pipeline(mini_pipeline)
        return PipelineOrchestrator(
            defn,
            workspace_root=ws,
            runners={"fake": fake_runner, "local": LocalRunner()},
            sleep=lambda s: None,
        )

    return _make


@pytest.fixture()
def client(ws) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def api_pipeline(ws, monkeypatch) -> Path:
    """Pipeline file whose steps only run the current interpreter."""
    import sys

    import yaml

    py = sys.executable
    data = {
        "name": "api",
        "image": IMAGE,
        "gitops": {"repo_path": "deploy", "commit": False},
        "stages": [
            {
                "name": "pr-validation",
                "triggers": ["pull_request"],
                "steps": [{"name": "lint", "command": [py, "-c", "print('lint ok')"]}],
            },
            {
                "name": "development",
                "triggers": ["push"],
                "branches": ["main"],
                "depends_on": ["pr-validation"],
                "environment": "development",
                "promote": True,
                "steps": [
                    {"name": "build", "command": [py, "-c", "print('built $IMAGE:$TAG')"]},
                    {"name": "deploy", "kind": "deploy"},
                ],
            },
            {
                "name": "production",
                "triggers": ["release_tag"],
                "depends_on": ["development"],
                "environment": "production",
                "requires_approval": True,
                "steps": [{"name": "deploy", "kind": "deploy"}],
            },
        ],
    }
    p = ws / "pipeline.yaml"
    p.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    monkeypatch.setenv("SHIPYARD_PIPELINE_FILE", str(p))
    return p
