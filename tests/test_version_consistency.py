"""Package version and API version must not drift apart."""

import re
from pathlib import Path

from shipyard import __version__
from shipyard.api.main import app

ROOT = Path(__file__).resolve().parents[1]


def test_pyproject_matches_package_version():
    text = (ROOT / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r'^version\s*=\s*"([^"]+)"', text, re.MULTILINE)
    assert m is not None
    assert m.group(1) == __version__


def test_openapi_reports_package_version(client):
    assert app.version == __version__
    assert client.get("/openapi.json").json()["info"]["version"] == __version__
