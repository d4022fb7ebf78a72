"""
Middleware for dirserve
"""

import logging
import time
from typing import Callable, Optional
from urllib.parse import quote
from fastapi import FastAPI, Request, Response, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .models import ApiResponse, ResponseCode, ServerConfig
from .metrics import metrics_manager

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Client address as seen by the server, or '-' when unknown"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(',')[0].strip()
    if request.client:
        return request.client.host
    return "-"


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Access logging middleware"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        client_ip = get_client_ip(request)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            self._log_access(request, None, duration, client_ip, error=type(e).__name__)
            raise

        duration = time.time() - start_time
        self._log_access(request, response, duration, client_ip)
        return response

    def _log_access(
        self,
        request: Request,
        response: Optional[Response],
        duration: float,
        client_ip: str,
        error: Optional[str] = None
    ):
        """Log access information"""

        status_code = response.status_code if response else 500
        content_length = response.headers.get("content-length", "-") if response else "-"

        log_data = {
            "method": request.method,
            # Quoted so control characters in a rejected path cannot forge log lines
            "path": quote(request.url.path, safe="/"),
            "status": status_code,
            "size": content_length,
            "duration": round(duration * 1000, 2),  # milliseconds
            "ip": client_ip,
            "user_agent": request.headers.get("user-agent", "-"),
        }

        if error:
            log_data["error"] = error

        if status_code >= 500:
            logger.error(f"ACCESS {log_data}")
        elif status_code >= 400:
            logger.warning(f"ACCESS {log_data}")
        else:
            logger.info(f"ACCESS {log_data}")


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """Global exception handler middleware"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except HTTPException:
            raise

        except Exception as e:
            logger.exception(f"Unhandled exception on {request.method}: {type(e).__name__}")
            metrics_manager.increment_errors()

            # Never leak internals such as absolute paths to the client
            error_response = ApiResponse(
                code=ResponseCode.INTERNAL_ERROR.value,
                msg="Internal server error",
                data=None
            )

            return JSONResponse(
                status_code=500,
                content=error_response.to_dict()
            )


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """Request metrics collection middleware"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        metrics_manager.increment_requests(request.method)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            metrics_manager.record_response(status_code, time.time() - start_time)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds browser hardening headers to every response

    A Content-Security-Policy is only sent when enable_security is set.
    Headers a route already chose are left alone.
    """

    def __init__(self, app, enable_security: bool = False, content_security_policy: str = ""):
        super().__init__(app)
        self.headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
        if enable_security:
            self.headers["Content-Security-Policy"] = content_security_policy or "default-src 'self'"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers.setdefault(name, value)
        return response


def setup_middleware(app: FastAPI, server: ServerConfig):
    """Setup all middleware for the application"""

    # Innermost first: exceptions are turned into responses before logging sees them
    app.add_middleware(ExceptionHandlerMiddleware)
    app.add_middleware(
        SecurityHeadersMiddleware,
        enable_security=server.enableSecurity,
        content_security_policy=server.contentSecurityPolicy,
    )
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestMetricsMiddleware)

    logger.info("Middleware setup complete")
