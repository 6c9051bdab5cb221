"""
Request logging middleware with correlation IDs for request tracing.
"""
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Context variables carried across async calls within one request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
job_id_var: ContextVar[str] = ContextVar("job_id", default="")

logger = logging.getLogger(__name__)

PREDICTIONS_PATH = "/predictions/"


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_var.get()


def get_job_id() -> str:
    """Get the generation job ID being polled, if any."""
    return job_id_var.get()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns a short request ID to each request and logs start/end with timing.
    Polling requests also carry the generation job ID so a whole job can be
    followed through the logs.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        request_id_var.set(request_id)

        job_id = ""
        path = request.url.path
        if PREDICTIONS_PATH in path:
            job_id = path.split(PREDICTIONS_PATH, 1)[1].split("/")[0]
        job_id_var.set(job_id)

        start_time = time.time()
        logger.info(
            f"[{request_id}] → {request.method} {path}",
            extra={
                "request_id": request_id,
                "job_id": job_id,
                "method": request.method,
                "path": path,
                "event": "request_start",
            },
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"[{request_id}] ✗ Error: {str(e)[:100]} ({duration_ms:.0f}ms)",
                extra={
                    "request_id": request_id,
                    "job_id": job_id,
                    "error": str(e),
                    "duration_ms": duration_ms,
                    "event": "request_error",
                },
                exc_info=True,
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_level = logging.INFO if response.status_code < 400 else logging.WARNING
        logger.log(
            log_level,
            f"[{request_id}] ← {response.status_code} ({duration_ms:.0f}ms)",
            extra={
                "request_id": request_id,
                "job_id": job_id,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "event": "request_end",
            },
        )
        response.headers["X-Request-ID"] = request_id
        return response


class ContextualLogger:
    """
    Logger wrapper that prefixes the request ID, and the job ID when one is set.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _format_msg(self, msg: str) -> str:
        prefix = ""
        request_id = get_request_id()
        job_id = get_job_id()
        if request_id:
            prefix = f"[{request_id}]"
        if job_id:
            prefix += f"[job:{job_id[:12]}]"
        return f"{prefix} {msg}" if prefix else msg

    def debug(self, msg: str, *args, **kwargs):
        self.logger.debug(self._format_msg(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self.logger.info(self._format_msg(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self.logger.warning(self._format_msg(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self.logger.error(self._format_msg(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        self.logger.exception(self._format_msg(msg), *args, **kwargs)


def get_logger(name: str) -> ContextualLogger:
    """Get a contextual logger that includes request/job IDs."""
    return ContextualLogger(name)
