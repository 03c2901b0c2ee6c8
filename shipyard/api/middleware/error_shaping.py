"""Last-resort error shaping: clients never see a stack trace."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from shipyard.api.deps import status_for
from shipyard.core.errors import ShipyardError

log = logging.getLogger("shipyard.errors")


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id")


def _shaped(status_code: int, detail: Any, rid: Optional[str]) -> JSONResponse:
    payload = {"detail": detail}
    headers = {}
    if rid:
        payload["request_id"] = rid
        headers["X-Request-Id"] = rid
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


class SafeErrorMiddleware(BaseHTTPMiddleware):
    """
    - Engine errors that escape a router keep their type and details
    - Anything else becomes a bare 500
    - Tracebacks go to the server log only
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except ShipyardError as e:
            rid = _request_id(request)
            log.warning("Unhandled %s rid=%s path=%s: %s", type(e).__name__, rid, request.url.path, e)
            return _shaped(status_for(e), e.to_dict(), rid)
        except Exception as e:
            rid = _request_id(request)
            log.error("Unhandled error: %s rid=%s path=%s", e, rid, request.url.path, exc_info=True)
            return _shaped(500, "Internal Server Error", rid)
