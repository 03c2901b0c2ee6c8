from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from .base import ToolOutcome
from .local import LocalRunner


class DockerRunner(LocalRunner):
    """Runs the tool inside a throwaway container with the stage workspace mounted."""

    name = "docker"

    def build_command(
        self,
        command: List[str],
        *,
        cwd: Path,
        env: Optional[Dict[str, str]],
        image: Optional[str],
        workdir: str,
    ) -> List[str]:
        if not image:
            raise ValueError("docker runner requires an image")
        args = ["docker", "run", "--rm", "-v", f"{Path(cwd).resolve()}:{workdir}", "-w", workdir]
        for k in sorted(env or {}):
            args += ["-e", f"{k}={env[k]}"]
        return args + [image] + list(command)

    def run(
        self,
        command: List[str],
        *,
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
        timeout_seconds: Optional[float] = None,
        image: Optional[str] = None,
        workdir: str = "/workspace",
    ) -> ToolOutcome:
        docker_cmd = self.build_command(command, cwd=cwd, env=env, image=image, workdir=workdir)
        # env is passed into the container, not to the docker client
        return super().run(docker_cmd, cwd=cwd, timeout_seconds=timeout_seconds)
