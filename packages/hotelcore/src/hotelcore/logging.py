"""
Logging setup for hotelcore services.

All modules log through ``logging.getLogger(__name__)`` and pass structured
context with ``extra={...}``. In JSON mode that context becomes fields of the
log line.
"""

import logging
import sys
from datetime import datetime, timezone

from pythonjsonlogger import jsonlogger

from hotelcore.settings import get_settings

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class BridgeJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with an ISO-8601 UTC ``ts`` and the level name."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["ts"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """
    Configure the root logger once per process.

    Args:
        level: Log level name (defaults to LOG_LEVEL setting)
        json_output: Emit JSON lines (defaults to LOG_JSON setting)
    """
    settings = get_settings()
    level = (level or settings.LOG_LEVEL).upper()
    json_output = settings.LOG_JSON if json_output is None else json_output

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(BridgeJsonFormatter("%(message)s", json_default=str))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
