from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from shipyard.core.observability.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_TOTAL,
    normalize_path,
)

log = logging.getLogger("shipyard.request")

REQUEST_ID_HEADER = "X-Request-Id"


def _incoming_request_id(request: Request) -> str:
    rid = (request.headers.get("x-request-id") or "").strip()
    return rid[:128] if rid else uuid.uuid4().hex


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets request.state.request_id, echoes it as X-Request-Id, records HTTP
    metrics and writes one access line per /api/ call. Webhook bodies and
    signatures are never logged.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rid = _incoming_request_id(request)
        request.state.request_id = rid

        start = time.perf_counter()
        resp = await call_next(request)
        elapsed = time.perf_counter() - start

        resp.headers[REQUEST_ID_HEADER] = rid

        path = normalize_path(request.url.path)
        method = request.method.upper()
        HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status=str(resp.status_code)).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(elapsed)

        if request.url.path.startswith("/api/"):
            fields = {
                "request_id": rid,
                "method": method,
                "path": request.url.path,
                "status_code": resp.status_code,
                "duration_ms": int(elapsed * 1000),
            }
            delivery = request.headers.get("x-github-delivery")
            if delivery:
                fields["delivery"] = delivery
            log.info("request %s", json.dumps(fields, sort_keys=True))
        return resp
