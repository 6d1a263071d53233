"""
Logging configuration
"""

import logging
import sys
from typing import Optional
from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s%(error_suffix)s"

# error_context keys worth repeating on the log line
CONTEXT_KEYS = ("entity_kind", "remote_id", "field_label", "column", "api_url", "status_code", "retry_count")


class ErrorContextFilter(logging.Filter):
    """
    Render the error_context passed via extra= as a short suffix.

    Records without error_context get an empty suffix so the format string
    always resolves.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        error_context = getattr(record, "error_context", None)
        suffix = ""
        if isinstance(error_context, dict):
            context = error_context.get("context") or {}
            pairs = [f"{key}={context[key]}" for key in CONTEXT_KEYS if context.get(key) is not None]
            if pairs:
                suffix = f" [{', '.join(pairs)}]"
        record.error_suffix = suffix
        return True


def setup_logging(level: Optional[str] = None):
    """Configure application logging"""

    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ErrorContextFilter())

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler]
    )

    # Quiet the chatty libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {logging.getLevelName(log_level)} level")
