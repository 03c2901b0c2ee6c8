from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional

from .base import ToolOutcome, ToolRunner


def _text(v) -> str:
    if v is None:
        return ""
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    return v


class LocalRunner(ToolRunner):
    name = "local"

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
        if not command:
            raise ValueError("local runner requires a command")

        full_env = dict(os.environ)
        full_env.update(env or {})

        start = time.monotonic()
        try:
            r = subprocess.run(
                list(command),
                cwd=str(cwd),
                env=full_env,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            return ToolOutcome(
                exit_code=124,
                stdout=_text(e.stdout),
                stderr=_text(e.stderr),
                duration_ms=int((time.monotonic() - start) * 1000),
                timed_out=True,
            )
        return ToolOutcome(
            exit_code=r.returncode,
            stdout=r.stdout or "",
            stderr=r.stderr or "",
            duration_ms=int((time.monotonic() - start) * 1000),
        )
