from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

REDACTED = "<REDACTED>"

PII_KEYS = frozenset({"nin", "nationalid", "national_id", "phone", "phonenumber", "phone_number", "pin", "email"})

_KEY_VALUE_PATTERNS = [
    re.compile(
        r'(?i)("?(?:nin|nationalId|national_id|phone|phoneNumber|phone_number|pin|email)"?\s*[:=]\s*)("[^"]*"|\'[^\']*\'|[^,\s}\]]+)'  # noqa: E501
    ),
]
_PHONE_PATTERN = re.compile(r"\+\d{1,3}[\s-]?\d{2,4}[\s-]?\d{3,4}[\s-]?\d{3,4}")


def redact_text(text: str) -> str:
    redacted = text
    for pattern in _KEY_VALUE_PATTERNS:
        redacted = pattern.sub(rf"\1{REDACTED}", redacted)
    return _PHONE_PATTERN.sub(REDACTED, redacted)


def redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in PII_KEYS else redact_value(item)
            for key, item in value.items()
        }
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [redact_value(item) for item in value]
    return value


class PiiRedactionFilter(logging.Filter):
    """Masks personal identifiers before a record reaches any handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)

        if isinstance(record.args, Mapping):
            record.args = {key: redact_value(value) for key, value in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(redact_value(value) for value in record.args)

        extra_payload = getattr(record, "extra", None)
        if isinstance(extra_payload, Mapping):
            record.extra = redact_value(extra_payload)

        return True
