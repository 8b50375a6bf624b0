from __future__ import annotations

import logging
import re
from typing import Any


LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

REDACTED = "[redacted]"
SENSITIVE_KEYS = ("access_token", "refresh_token", "client_secret", "code")

_KEY_VALUE_PATTERN = re.compile(
    r"(?P<key>(?<!\w)['\"]?(?:%s)['\"]?\s*[:=]\s*)(?P<quote>['\"]?)(?P<value>[^'\"\s,&}]+)" % "|".join(SENSITIVE_KEYS)
)
_BEARER_PATTERN = re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+")


def redact_token(value: str | None, visible: int = 4) -> str:
    if not value:
        return "<none>"
    text = str(value)
    if len(text) <= visible * 2:
        return REDACTED
    return f"{text[:visible]}...{REDACTED}"


def redact_text(text: str) -> str:
    scrubbed = _KEY_VALUE_PATTERN.sub(lambda m: f"{m.group('key')}{m.group('quote')}{REDACTED}", text)
    return _BEARER_PATTERN.sub(lambda m: f"{m.group(1)}{REDACTED}", scrubbed)


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: (REDACTED if str(key) in SENSITIVE_KEYS else _redact_value(item))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact_value(item) for item in value)
    if isinstance(value, str):
        return redact_text(value)
    return value


class TokenRedactionFilter(logging.Filter):
    """Scrubs OAuth secrets from records before any handler formats them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        if isinstance(record.args, dict):
            record.args = _redact_value(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(_redact_value(arg) for arg in record.args)
        return True


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    root = logging.getLogger()
    for handler in root.handlers:
        if not any(isinstance(existing, TokenRedactionFilter) for existing in handler.filters):
            handler.addFilter(TokenRedactionFilter())
