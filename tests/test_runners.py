import sys
from pathlib import Path

import pytest

from shipyard.core.runners import RUNNERS, DockerRunner, LocalRunner


def test_runners_registered():
    assert set(RUNNERS) == {"local", "docker"}
    assert isinstance(RUNNERS["docker"], DockerRunner)


def test_local_runner_captures_output_and_env(tmp_path: Path):
    out = LocalRunner().run(
        [sys.executable, "-c", "import os, sys; print(os.getcwd()); print(os.environ['STAGE'], file=sys.stderr); sys.exit(3)"],
        cwd=tmp_path,
        env={"STAGE": "pre-prod"},
    )
    assert out.exit_code == 3
    assert Path(out.stdout.strip()).resolve() == tmp_path.resolve()
    assert out.stderr.strip() == "pre-prod"
    assert "pre-prod" in out.output
    assert not out.timed_out


def test_local_runner_timeout(tmp_path: Path):
    out = LocalRunner().run([sys.executable, "-c", "import time; time.sleep(5)"], cwd=tmp_path, timeout_seconds=0.2)
    assert out.timed_out
    assert out.exit_code == 124


def test_local_runner_tolerates_undecodable_output(tmp_path: Path):
    out = LocalRunner().run(
        [sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'progress \\xff done\\n')"],
        cwd=tmp_path,
    )
    assert out.exit_code == 0
    assert out.stdout.startswith("progress ")
    assert out.stdout.rstrip().endswith(" done")
    assert "\ufffd" in out.stdout


def test_local_runner_requires_command(tmp_path: Path):
    with pytest.raises(ValueError):
        LocalRunner().run([], cwd=tmp_path)


def test_docker_command_line(tmp_path: Path):
    cmd = DockerRunner().build_command(
        ["zap-baseline.py", "-t", "http://app"],
        cwd=tmp_path,
        env={"B": "2", "A": "1"},
        image="ghcr.io/zaproxy/zaproxy:stable",
        workdir="/zap/wrk",
    )
    assert cmd == [
        "docker", "run", "--rm",
        "-v", f"{tmp_path.resolve()}:/zap/wrk",
        "-w", "/zap/wrk",
        "-e", "A=1",
        "-e", "B=2",
        "ghcr.io/zaproxy/zaproxy:stable",
        "zap-baseline.py", "-t", "http://app",
    ]


def test_docker_runner_requires_image(tmp_path: Path):
    with pytest.raises(ValueError):
        DockerRunner().run(["trivy"], cwd=tmp_path)
