from __future__ import annotations

import json
import logging
from typing import Any, Dict

# Extra attributes promoted into the JSON payload when present on a record
EXTRA_FIELDS = ("pool_guid", "operation_id", "command", "exit_code")


class JsonLogFormatter(logging.Formatter):
    """Render log records as JSON lines with pool/operation metadata when available."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"
    default_msec_format = "%s.%03dZ"

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - base class contract
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True)


def init_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Install a single stream handler on the root logger."""

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    # Replace earlier handlers to avoid duplicate logs.
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # The scheduler is chatty at INFO on every job run.
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
