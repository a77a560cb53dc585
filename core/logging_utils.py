"""Logging utilities for the Lambda proxy container.

Provides JSON logging configuration for CloudWatch and structured,
sanitized request/response log records.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pythonjsonlogger import json as jsonlogger

# Header names whose values never reach the logs (case-insensitive substring match)
SENSITIVE_HEADERS = [
    "authorization",
    "cookie",
    "x-api-key",
    "x-auth",
    "x-token",
    "x-secret",
    "x-amz-security-token",
    "proxy-authorization",
]

REDACTED = "[REDACTED]"

_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName",
        "relativeCreated", "thread", "threadName", "exc_info",
        "exc_text", "stack_info", "asctime", "datefmt", "taskName",
    )
)


def configure_json_logging(level: str = "INFO", pretty: bool = False) -> None:
    """Configure the root logger to emit JSON.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        pretty: If True, use indented JSON (for local development).
                If False, use compact JSON (for CloudWatch).
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    handler = logging.StreamHandler()
    handler.setLevel(log_level)

    if pretty:
        formatter: logging.Formatter = _PrettyJsonFormatter()
    else:
        formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            timestamp=True,
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


class _PrettyJsonFormatter(logging.Formatter):
    """Indented JSON formatter for local development."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, indent=2, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return json.dumps({"message": str(record.getMessage())}, indent=2)


def _is_sensitive_header(name: str) -> bool:
    name_lower = name.lower()
    return any(sensitive in name_lower for sensitive in SENSITIVE_HEADERS)


HeaderInput = Union[Dict[str, Any], Iterable[Tuple[str, str]]]


def sanitize_headers(headers: HeaderInput) -> Dict[str, List[str]]:
    """Group headers by name with sensitive values redacted.

    Args:
        headers: Mapping, multi-map, or iterable of (name, value) pairs

    Returns:
        Dictionary of header name to list of (possibly redacted) values
    """
    items = headers.items() if hasattr(headers, "items") else headers
    sanitized: Dict[str, List[str]] = {}
    for name, value in items:
        values = value if isinstance(value, list) else [value]
        if _is_sensitive_header(name):
            values = [REDACTED] * len(values)
        sanitized.setdefault(name, []).extend(str(v) for v in values)
    return sanitized


def format_request_log(
    request_id: Optional[str],
    http_method: str,
    request_path: str,
    headers: HeaderInput,
    event_shape: str,
    lambda_context: Optional[Any] = None,
) -> Dict[str, Any]:
    """Format structured request log entry.

    Args:
        request_id: Request ID (from the event or Lambda context)
        http_method: HTTP method (GET, POST, etc.)
        request_path: Normalized request path
        headers: Request headers
        event_shape: Shape of the originating event
        lambda_context: Optional Lambda context for metadata

    Returns:
        Dictionary with structured log data
    """
    log_data: Dict[str, Any] = {
        "request_id": request_id,
        "http_method": http_method,
        "request_path": request_path,
        "event_shape": event_shape,
        "request_headers": sanitize_headers(headers),
    }

    if lambda_context:
        log_data["lambda_function_name"] = getattr(lambda_context, "function_name", None)
        log_data["lambda_memory_limit"] = getattr(lambda_context, "memory_limit_in_mb", None)
        log_data["lambda_remaining_time_ms"] = getattr(
            lambda_context, "get_remaining_time_in_millis", lambda: None
        )()

    return log_data


def format_response_log(
    request_id: Optional[str],
    http_method: str,
    request_path: str,
    status_code: int,
    duration_ms: float,
    streamed: bool = False,
    success: bool = True,
) -> Dict[str, Any]:
    """Format structured access log entry for a completed invocation.

    Args:
        request_id: Request ID
        http_method: HTTP method
        request_path: Normalized request path
        status_code: HTTP status code sent to the invoker
        duration_ms: Processing duration in milliseconds
        streamed: Whether the response was written through the streaming entry point
        success: Whether the handler completed without a mapped failure

    Returns:
        Dictionary with structured log data
    """
    return {
        "request_id": request_id,
        "http_method": http_method,
        "request_path": request_path,
        "response_status": status_code,
        "duration_ms": round(duration_ms, 2),
        "streamed": streamed,
        "success": success,
    }
