"""Approval storage for stages gated on a human sign-off."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from shipyard.core.observability.audit import audit_event
from shipyard.core.pipeline.models import parse_iso
from shipyard.settings import get_settings


_log = logging.getLogger("shipyard.approvals")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _safe(part: str, fallback: str) -> str:
    return "".join(ch if (ch.isalnum() or ch in {"-", "_"}) else "_" for ch in (part or fallback))


def _approval_root(workspace_root: Path) -> Path:
    p = workspace_root / ".shipyard" / "approvals"
    p.mkdir(parents=True, exist_ok=True)
    return p


def _approval_key(stage: str, artifact_id: str) -> str:
    digest = hashlib.sha256(f"{stage}\n{artifact_id}".encode("utf-8")).hexdigest()[:32]
    return f"{_safe(stage, 'stage')}__{digest}"


def _approval_file(workspace_root: Path, stage: str, artifact_id: str) -> Path:
    return _approval_root(workspace_root) / f"{_approval_key(stage, artifact_id)}.json"


class ApprovalStore:
    def __init__(self, *, workspace_root: Path, ttl_seconds: Optional[float] = None):
        self.workspace_root = workspace_root
        self.ttl_seconds = ttl_seconds

    def _ttl(self) -> float:
        if self.ttl_seconds is not None:
            return float(self.ttl_seconds)
        return get_settings().approval_ttl_seconds

    def save_approval(
        self,
        *,
        stage: str,
        artifact_id: str,
        approver: str,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not approver:
            raise ValueError("approver is required")
        obj = {
            "stage": stage,
            "artifact_id": artifact_id,
            "approver": approver,
            "notes": notes or "",
            "metadata": metadata or {},
            "approved": True,
            "approved_at": _utc_now_iso(),
        }
        p = _approval_file(self.workspace_root, stage, artifact_id)
        p.write_text(json.dumps(obj, indent=2, sort_keys=True), encoding="utf-8")
        _log.info("Approval recorded stage=%s artifact=%s approver=%s", stage, artifact_id, approver)
        audit_event(
            "approval.granted",
            workspace_root=self.workspace_root,
            actor=approver,
            artifact=artifact_id,
            extra={"stage": stage},
        )
        return obj

    def get_approval(self, *, stage: str, artifact_id: str) -> Optional[Dict[str, Any]]:
        """Return the approval if it exists and has not expired."""
        p = _approval_file(self.workspace_root, stage, artifact_id)
        if not p.exists():
            return None
        try:
            obj = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            _log.warning("Unreadable approval file %s", p)
            return None
        if obj.get("stage") != stage or obj.get("artifact_id") != artifact_id:
            _log.warning("Approval file %s does not belong to stage=%s artifact=%s", p, stage, artifact_id)
            return None

        approved_at_dt = parse_iso(str(obj.get("approved_at") or ""))
        if approved_at_dt is None or approved_at_dt.tzinfo is None:
            # an approval we cannot date is treated as missing
            return None

        age_seconds = (datetime.now(timezone.utc) - approved_at_dt).total_seconds()
        if age_seconds > self._ttl():
            return None
        return obj

    def revoke_approval(self, *, stage: str, artifact_id: str) -> bool:
        p = _approval_file(self.workspace_root, stage, artifact_id)
        if p.exists():
            p.unlink()
            _log.info("Approval revoked stage=%s artifact=%s", stage, artifact_id)
            audit_event("approval.revoked", workspace_root=self.workspace_root, artifact=artifact_id, extra={"stage": stage})
            return True
        return False

    def list_approvals(self, *, stage: str) -> List[Dict[str, Any]]:
        root = _approval_root(self.workspace_root)
        results = []
        for p in sorted(root.glob(f"{_safe(stage, 'stage')}__*.json")):
            try:
                obj = json.loads(p.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            if obj.get("stage") == stage:
                results.append(obj)
        results.sort(key=lambda a: str(a.get("approved_at") or ""))
        return results
