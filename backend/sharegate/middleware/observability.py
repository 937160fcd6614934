from __future__ import annotations

import hashlib
import time
import uuid

from fastapi import Request
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from sharegate.security import parse_token
from sharegate.telemetry.logging import get_logger
from sharegate.telemetry.metrics import api_request_duration_seconds, api_requests_total


def _endpoint_label(request: Request) -> str:
    # route templates keep grant tokens out of metric labels
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = uuid.uuid4().hex
        logger = get_logger(trace_id=trace_id)
        method = request.method.upper()

        # user_id_hash from the JWT sub, without failing the request
        user_id_hash = None
        auth = request.headers.get("authorization")
        if auth and auth.lower().startswith("bearer "):
            try:
                payload = parse_token(auth.split(" ", 1)[1], request.app.state.settings)
                sub = payload.get("sub")
                if sub:
                    user_id_hash = hashlib.sha256(str(sub).encode("utf-8")).hexdigest()
            except JWTError:
                user_id_hash = None

        t0 = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Trace-Id"] = trace_id
            return response
        finally:
            dt = time.perf_counter() - t0
            endpoint = _endpoint_label(request)
            api_requests_total.labels(method=method, endpoint=endpoint, status=str(status_code)).inc()
            api_request_duration_seconds.labels(endpoint=endpoint).observe(dt)
            logger.info(
                "request",
                action=f"{method} {endpoint}",
                duration_ms=round(dt * 1000.0, 3),
                result="ok" if status_code < 400 else "error",
                status=status_code,
                user_id_hash=user_id_hash,
            )
