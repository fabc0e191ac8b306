"""
Request middleware for the HTTP API: correlation ids, timing and error mapping.
"""

import logging
import time
from typing import Callable

from aiohttp import web
from sqlalchemy.exc import SQLAlchemyError

from ..core.logging import LogContextManager, generate_correlation_id, performance_logger

logger = logging.getLogger(__name__)


@web.middleware
async def request_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Bind a correlation id, time the request and turn store failures into 500s."""
    corr_id = request.headers.get("X-Correlation-ID") or generate_correlation_id()
    start_time = time.perf_counter()

    with LogContextManager(corr_id=corr_id, projection="api"):
        try:
            response = await handler(request)
        except SQLAlchemyError as e:
            logger.error(f"Source store error on {request.method} {request.path}: {e}")
            response = web.json_response({"error": "internal server error"}, status=500)

        resource = request.match_info.route.resource
        route = resource.canonical if resource is not None else request.path
        performance_logger.log_operation(
            f"http_{request.method}_{route}",
            (time.perf_counter() - start_time) * 1000,
            success=response.status < 500,
            extra={"status_code": response.status},
        )
        response.headers["X-Correlation-ID"] = corr_id
        return response
