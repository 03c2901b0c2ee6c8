from __future__ import annotations

import logging

from fastapi import FastAPI

from shipyard import __version__
from shipyard.api.endpoints import (
    approvals,
    audit,
    environments,
    health,
    metrics_export,
    pipeline,
    promotions,
    runs,
    webhooks,
)
from shipyard.api.middleware.error_shaping import SafeErrorMiddleware
from shipyard.api.middleware.request_context import RequestContextMiddleware
from shipyard.settings import get_settings

logging.getLogger("shipyard").setLevel(get_settings().log_level)

app = FastAPI(
    title="Shipyard Pipeline API",
    version=__version__,
)

# ------------------------------------------------------------
# Middleware stack: last added = outermost.
#   SafeErrorMiddleware -> RequestContext -> handler
# ------------------------------------------------------------
app.add_middleware(RequestContextMiddleware)
app.add_middleware(SafeErrorMiddleware)


app.include_router(health.router)
app.include_router(metrics_export.router)

for r in (
    webhooks.router,
    runs.router,
    pipeline.router,
    environments.router,
    approvals.router,
    promotions.router,
    audit.router,
):
    app.include_router(r, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "healthy"}
