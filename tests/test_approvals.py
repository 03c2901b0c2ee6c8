import json
from pathlib import Path

import pytest

from shipyard.core.approvals import ApprovalStore, _approval_file
from shipyard.core.observability.audit import read_audit

from conftest import DIGEST


def test_save_get_revoke(ws: Path):
    store = ApprovalStore(workspace_root=ws)
    assert store.get_approval(stage="production", artifact_id=DIGEST) is None

    saved = store.save_approval(stage="production", artifact_id=DIGEST, approver="alice", notes="CAB-118")
    assert saved["approved"] is True

    got = store.get_approval(stage="production", artifact_id=DIGEST)
    assert got["approver"] == "alice"
    assert got["notes"] == "CAB-118"
    # approvals are per artifact
    assert store.get_approval(stage="production", artifact_id="sha256:" + "cd" * 32) is None

    assert [a["artifact_id"] for a in store.list_approvals(stage="production")] == [DIGEST]

    assert store.revoke_approval(stage="production", artifact_id=DIGEST) is True
    assert store.revoke_approval(stage="production", artifact_id=DIGEST) is False
    assert store.get_approval(stage="production", artifact_id=DIGEST) is None

    types = [e["type"] for e in read_audit(ws)]
    assert types == ["approval.granted", "approval.revoked"]


def test_approver_required(ws: Path):
    with pytest.raises(ValueError):
        ApprovalStore(workspace_root=ws).save_approval(stage="production", artifact_id=DIGEST, approver="")


def test_expired_approval_is_ignored(ws: Path):
    store = ApprovalStore(workspace_root=ws, ttl_seconds=3600)
    store.save_approval(stage="production", artifact_id=DIGEST, approver="alice")

    p = _approval_file(ws, "production", DIGEST)
    obj = json.loads(p.read_text(encoding="utf-8"))
    obj["approved_at"] = "2020-01-01T00:00:00Z"
    p.write_text(json.dumps(obj), encoding="utf-8")
    assert store.get_approval(stage="production", artifact_id=DIGEST) is None

    obj["approved_at"] = "not-a-date"
    p.write_text(json.dumps(obj), encoding="utf-8")
    assert store.get_approval(stage="production", artifact_id=DIGEST) is None


def test_ttl_from_settings(ws: Path, monkeypatch):
    monkeypatch.setenv("SHIPYARD_APPROVAL_TTL_SECONDS", "0")
    store = ApprovalStore(workspace_root=ws)
    store.save_approval(stage="production", artifact_id=DIGEST, approver="alice")
    p = _approval_file(ws, "production", DIGEST)
    obj = json.loads(p.read_text(encoding="utf-8"))
    obj["approved_at"] = "2026-01-01T00:00:00Z"
    p.write_text(json.dumps(obj), encoding="utf-8")
    assert store.get_approval(stage="production", artifact_id=DIGEST) is None


def test_approvals_do_not_leak_between_similar_identities(ws: Path):
    store = ApprovalStore(workspace_root=ws)
    store.save_approval(stage="production", artifact_id="registry.local/app:v1.0", approver="alice")

    assert store.get_approval(stage="production", artifact_id="registry_local/app:v1_0") is None
    assert store.get_approval(stage="production.", artifact_id="registry.local/app:v1.0") is None
    assert store.get_approval(stage="production", artifact_id="registry.local/app:v1.0")["approver"] == "alice"

    store.save_approval(stage="pre_prod", artifact_id=DIGEST, approver="bob")
    assert store.list_approvals(stage="pre.prod") == []
    assert [a["approver"] for a in store.list_approvals(stage="pre_prod")] == ["bob"]


def test_approval_file_for_another_artifact_is_rejected(ws: Path):
    store = ApprovalStore(workspace_root=ws)
    store.save_approval(stage="production", artifact_id=DIGEST, approver="alice")
    other = "sha256:" + "ef" * 32
    src = _approval_file(ws, "production", DIGEST)
    _approval_file(ws, "production", other).write_text(src.read_text(encoding="utf-8"), encoding="utf-8")

    assert store.get_approval(stage="production", artifact_id=other) is None
