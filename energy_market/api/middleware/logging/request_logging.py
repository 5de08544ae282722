import time
import json
import traceback
from datetime import datetime
from typing import Optional
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from energy_market.core.logger.logger import get_logger

logger = get_logger("energy_market.request")

QUIET_PATHS = {"/api/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured log line per request, correlated by X-Request-ID"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id

        log_context = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
            "timestamp": datetime.utcnow().isoformat() + "Z"
        }

        response: Optional[Response] = None
        try:
            response = await call_next(request)

            log_context.update({
                "status_code": response.status_code,
                "duration_ms": round((time.time() - start_time) * 1000, 2)
            })
            response.headers["X-Request-ID"] = request_id

            if request.url.path in QUIET_PATHS:
                logger.debug(json.dumps(log_context))
            elif response.status_code >= 500:
                logger.error(json.dumps(log_context))
            else:
                logger.info(json.dumps(log_context))

            return response

        except Exception as e:
            log_context.update({
                "error": str(e),
                "error_type": e.__class__.__name__,
                "stack_trace": traceback.format_exc(),
                "duration_ms": round((time.time() - start_time) * 1000, 2)
            })
            logger.error(json.dumps(log_context))
            raise
