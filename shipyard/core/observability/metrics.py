from __future__ import annotations

import re

from prometheus_client import Counter, Histogram


def normalize_path(path: str) -> str:
    """Reduce high-cardinality paths for metrics labels."""
    p = path or "/"

    # UUID-ish
    p = re.sub(r"/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}", "/:uuid", p)
    # long hex
    p = re.sub(r"/[0-9a-fA-F]{16,}", "/:hex", p)
    # ints
    p = re.sub(r"/\d+", "/:id", p)

    p = re.sub(r"^(/api/v1/runs)/[^/]+", r"\1/:run_id", p)
    p = re.sub(r"^(/api/v1/environments)/[^/]+", r"\1/:env", p)

    return p


HTTP_REQUESTS_TOTAL = Counter(
    "shipyard_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "shipyard_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

RUNS_TOTAL = Counter(
    "shipyard_runs_total",
    "Pipeline runs by trigger and final state",
    ["trigger", "state"],
)

STAGE_RUNS_TOTAL = Counter(
    "shipyard_stage_runs_total",
    "Stage outcomes",
    ["stage", "status"],
)

STEP_DURATION_SECONDS = Histogram(
    "shipyard_step_duration_seconds",
    "Step duration in seconds",
    ["stage", "step", "status"],
    buckets=(0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1800),
)

GATE_DECISIONS_TOTAL = Counter(
    "shipyard_gate_decisions_total",
    "Gate decisions",
    ["stage", "decision", "code"],
)

PROMOTIONS_TOTAL = Counter(
    "shipyard_promotions_total",
    "Promotion attempts",
    ["from_env", "to_env", "result"],
)
