"""
Request count and latency for every endpoint.

The endpoint label is the matched route template (``/api/images/{image_id}``)
so image ids do not explode label cardinality.
"""

import logging
import time
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from fluxstudio.services.prometheus_metrics import record_http_response

logger = logging.getLogger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Error processing request {method} {request.url.path}: {e}")
            record_http_response(method, self._endpoint(request), 500, time.time() - start_time)
            raise

        record_http_response(method, self._endpoint(request), response.status_code, time.time() - start_time)
        return response

    @staticmethod
    def _endpoint(request: Request) -> str:
        route = request.scope.get("route")
        path = getattr(route, "path", None)
        return path or request.url.path
