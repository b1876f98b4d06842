"""
Structured logging setup using structlog.
"""
import logging
import re
import sys
from typing import Optional

import structlog

SENSITIVE_FIELDS = ('password', 'token', 'secret', 'api_key', 'authorization', 'auth')

SENSITIVE_PATTERNS = [
    re.compile(r'Bearer\s+[A-Za-z0-9._~+/=-]+'),
    re.compile(r'\b(?:sk|pk)-[A-Za-z0-9]{16,}\b'),
]

REDACTED = "[[REDACTED]]"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Setup structured logging with structlog."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        format="%(message)s",
        handlers=handlers,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive_data,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def redact_sensitive_data(logger, method_name, event_dict):
    """Redact credentials from log entries."""
    for field in SENSITIVE_FIELDS:
        if field in event_dict:
            event_dict[field] = REDACTED

    for key, value in event_dict.items():
        if isinstance(value, str):
            for pattern in SENSITIVE_PATTERNS:
                value = pattern.sub(REDACTED, value)
            event_dict[key] = value

    return event_dict
