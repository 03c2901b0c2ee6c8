from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from shipyard.core.runners import ToolRunner


_log = logging.getLogger("shipyard.gitops")


@dataclass(frozen=True)
class SyncResult:
    synced: bool
    attempts: int
    elapsed_ms: int
    reason: str
    last_output: str = ""
    canceled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "attempts": self.attempts,
            "elapsed_ms": self.elapsed_ms,
            "reason": self.reason,
            "canceled": self.canceled,
        }


class SyncWatcher:
    """Polls a status command until the GitOps controller reports the expected image."""

    def __init__(
        self,
        runner: ToolRunner,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self._sleep = sleep
        self._clock = clock

    def wait(
        self,
        command: List[str],
        *,
        expect: str,
        cwd: Path,
        timeout_seconds: float,
        interval_seconds: float = 5.0,
        env: Optional[Dict[str, str]] = None,
        image: Optional[str] = None,
        workdir: str = "/workspace",
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> SyncResult:
        start = self._clock()
        deadline = start + max(0.0, timeout_seconds)
        attempts = 0
        last = ""

        while True:
            if should_cancel is not None and should_cancel():
                return SyncResult(False, attempts, self._elapsed(start), "canceled", last, canceled=True)

            attempts += 1
            remaining = max(1.0, deadline - self._clock())
            outcome = self.runner.run(
                command,
                cwd=cwd,
                env=env,
                timeout_seconds=remaining,
                image=image,
                workdir=workdir,
            )
            last = outcome.output
            if outcome.exit_code == 0 and expect in last:
                _log.info("Sync reached after %d attempt(s): %s", attempts, expect)
                return SyncResult(True, attempts, self._elapsed(start), f"found {expect}", last)

            if self._clock() + interval_seconds > deadline:
                return SyncResult(
                    False,
                    attempts,
                    self._elapsed(start),
                    f"timed out waiting for {expect}",
                    last,
                )
            self._sleep(interval_seconds)

    def _elapsed(self, start: float) -> int:
        return int((self._clock() - start) * 1000)
