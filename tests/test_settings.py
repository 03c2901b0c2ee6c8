from pathlib import Path

from shipyard.settings import PROJECT_ROOT, get_settings


def test_defaults(monkeypatch):
    for key in (
        "SHIPYARD_WORKSPACE_ROOT",
        "SHIPYARD_PIPELINE_FILE",
        "SHIPYARD_WEBHOOK_SECRET",
        "SHIPYARD_IMAGE",
        "SHIPYARD_LOG_LEVEL",
        "SHIPYARD_APPROVAL_TTL_SECONDS",
        "SHIPYARD_HISTORY_LIMIT",
    ):
        monkeypatch.delenv(key, raising=False)
    s = get_settings()
    assert s.workspace_root == PROJECT_ROOT / "workspace"
    assert s.state_dir == PROJECT_ROOT / "workspace" / ".shipyard"
    assert s.pipeline_file is None
    assert s.webhook_secret is None
    assert s.image == "registry.local/shipyard/app"
    assert s.log_level == "INFO"
    assert s.approval_ttl_seconds == 3600.0
    assert s.history_limit == 50


def test_env_overrides_are_read_per_call(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("SHIPYARD_WORKSPACE_ROOT", str(tmp_path))
    monkeypatch.setenv("SHIPYARD_WEBHOOK_SECRET", "  s3cret ")
    monkeypatch.setenv("SHIPYARD_LOG_LEVEL", "debug")
    monkeypatch.setenv("SHIPYARD_STEP_TIMEOUT_SECONDS", "0")
    s = get_settings()
    assert s.workspace_root == tmp_path.resolve()
    assert s.webhook_secret == "s3cret"
    assert s.log_level == "DEBUG"
    assert s.step_timeout_seconds == 1.0

    monkeypatch.setenv("SHIPYARD_LOG_LEVEL", "chatty")
    monkeypatch.setenv("SHIPYARD_HISTORY_LIMIT", "many")
    s = get_settings()
    assert s.log_level == "INFO"
    assert s.history_limit == 50
