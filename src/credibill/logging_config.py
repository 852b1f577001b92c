"""
Structured logging for CrediBill

Every record carries the environment, the request id and the tenant app id
of the request being served. Provider secrets are masked before output.
"""
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from typing import Optional
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
app_id_var: ContextVar[Optional[int]] = ContextVar('app_id', default=None)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def bind_app_id(app_id: Optional[int]):
    """Attach the tenant app to log records for the rest of the request"""
    app_id_var.set(app_id)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assign each request an id (or reuse X-Request-ID) and echo it back"""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_token = request_id_var.set(request_id)
        app_token = app_id_var.set(None)

        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(request_token)
            app_id_var.reset(app_token)

        response.headers["X-Request-ID"] = request_id
        return response


class SecretRedactionFilter(logging.Filter):
    """
    Mask payment provider secrets in log messages

    Provider error bodies and request dumps can echo keys back; the
    patterns cover Flutterwave keys, bearer tokens and key=value pairs.
    """

    PATTERNS = [
        (re.compile(r'FLW(?:SECK|PUBK)(?:_TEST)?-[A-Za-z0-9\-]+'), "[REDACTED]"),
        (re.compile(r'(bearer\s+)[A-Za-z0-9_\-\.=]{8,}', re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(
            r'((?:secret_key|consumer_secret|company_token|CompanyToken|webhook_secret)["\']?\s*[:=>]\s*["\']?)[^\s"\'<,&]+',
            re.IGNORECASE
        ), r"\1[REDACTED]"),
    ]

    @classmethod
    def redact(cls, text: str) -> str:
        for pattern, replacement in cls.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.redact(record.msg)
        if record.args:
            if isinstance(record.args, tuple):
                record.args = tuple(self.redact(a) if isinstance(a, str) else a for a in record.args)
            elif isinstance(record.args, dict):
                record.args = {k: self.redact(v) if isinstance(v, str) else v for k, v in record.args.items()}
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter that includes environment, request id and app id"""

    def __init__(self, env: str = "dev", fmt: str = None, datefmt: str = None):
        self.env = env
        if fmt is None:
            fmt = "%(asctime)s [%(env)s] [%(request_id)s] [app=%(app_id)s] %(levelname)-8s %(name)s: %(message)s"
        if datefmt is None:
            datefmt = "%Y-%m-%d %H:%M:%S"
        super().__init__(fmt=fmt, datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:
        record.request_id = get_request_id() or "-"
        app_id = app_id_var.get()
        record.app_id = app_id if app_id is not None else "-"
        record.env = self.env
        return super().format(record)


def setup_logging(env: str = "dev", log_level: str = "INFO"):
    """
    Set up structured logging

    Args:
        env: Environment name (dev, test, staging, prod)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(StructuredFormatter(env=env))
    console_handler.addFilter(SecretRedactionFilter())
    root_logger.addHandler(console_handler)

    # httpx logs every provider URL at INFO, including query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING if env == "prod" else logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)

    return root_logger
