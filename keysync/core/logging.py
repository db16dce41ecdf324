from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from keysync.core.config import get_settings


_SECRET_KEY_NEEDLES = ("token", "key", "secret", "auth", "authorization", "password")
# Identity fields that merely contain "key" in their name.
_PUBLIC_KEYS = {"key_prefix", "key_last4", "api_key_id", "remote_id"}


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging() -> None:
    # Install a single root handler so workers, scripts and the API log the same way.
    settings = get_settings()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())


def _should_mask(key: str) -> bool:
    lowered = key.lower()
    if lowered in _PUBLIC_KEYS:
        return False
    return any(needle in lowered for needle in _SECRET_KEY_NEEDLES)


def _mask(value: Any) -> str:
    text = str(value or "")
    if not text:
        return ""
    return f"{text[:4]}***"


def redact(context: Any) -> Any:
    # Mask secret-looking values before structured context reaches a log line.
    if isinstance(context, dict):
        masked: dict[str, Any] = {}
        for key, value in context.items():
            if isinstance(value, (dict, list)):
                masked[key] = redact(value)
            elif _should_mask(str(key)):
                masked[key] = _mask(value)
            else:
                masked[key] = value
        return masked
    if isinstance(context, list):
        return [redact(item) for item in context]
    return context
