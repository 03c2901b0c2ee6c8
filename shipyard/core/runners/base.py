from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional


@dataclass(frozen=True)
class ToolOutcome:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout


class ToolRunner(ABC):
    name: str

    @abstractmethod
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
        """Run one tool invocation to completion.

        Non-zero exits and timeouts are reported in the outcome; only a
        runner that cannot start the tool at all raises.
        """
