"""Append-only audit trail of deployments, promotions, locks and approvals.

One JSON object per line in <workspace>/.shipyard/audit.log, rotated at
10MB with five backups.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional


AUDIT_FILE_NAME = "audit.log"

_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5


def audit_path_for(workspace_root: Path) -> Path:
    return Path(workspace_root) / ".shipyard" / AUDIT_FILE_NAME


class AuditLog:
    # one logger per audit file, shared by every AuditLog pointing at it
    _loggers: Dict[str, logging.Logger] = {}
    _guard = threading.Lock()

    def __init__(self, workspace_root: Path):
        self.path = audit_path_for(workspace_root)

    def _logger(self) -> logging.Logger:
        key = str(self.path.resolve())
        with self._guard:
            logger = self._loggers.get(key)
            if logger is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                handler = logging.handlers.RotatingFileHandler(
                    str(self.path), maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8"
                )
                handler.setFormatter(logging.Formatter("%(message)s"))
                logger = logging.getLogger(f"shipyard.audit.{len(self._loggers)}")
                logger.handlers = [handler]
                logger.setLevel(logging.INFO)
                logger.propagate = False
                self._loggers[key] = logger
            return logger

    def write(self, event_type: str, **fields: Any) -> Dict[str, Any]:
        record: Dict[str, Any] = {"ts_ms": int(time.time() * 1000), "type": event_type}
        extra = fields.pop("extra", None)
        record.update(fields)
        if extra:
            record["extra"] = extra
        self._logger().info(json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str))
        return record

    def tail(self, limit: int = 100, *, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Last `limit` entries, oldest first; `event_type` filters before the limit applies."""
        if not self.path.exists():
            return []
        if limit <= 0:
            return []
        out = []
        for line in reversed(self.path.read_text(encoding="utf-8").splitlines()):
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if event_type and entry.get("type") != event_type:
                continue
            out.append(entry)
            if len(out) >= limit:
                break
        out.reverse()
        return out


def audit_event(
    event_type: str,
    *,
    workspace_root: Path,
    actor: Optional[str] = None,
    run_id: Optional[str] = None,
    environment: Optional[str] = None,
    artifact: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    AuditLog(workspace_root).write(
        event_type, actor=actor, run_id=run_id, environment=environment, artifact=artifact, extra=extra
    )


def read_audit(
    workspace_root: Path, *, limit: int = 100, event_type: Optional[str] = None
) -> List[Dict[str, Any]]:
    return AuditLog(workspace_root).tail(limit, event_type=event_type)
