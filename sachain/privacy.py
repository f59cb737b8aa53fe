"""PII sanitisation for log output.

Audit records keep the raw ``ip_address`` / ``user_agent`` they were given;
only what goes to the log stream is masked.  :func:`redact_pii` is the
structlog processor installed by :func:`sachain.bootstrap.configure_logging`.
"""

from __future__ import annotations

import re
from collections.abc import MutableMapping
from typing import Any, Final

# ---------------------------------------------------------------------------
# PII sanitisation patterns
# ---------------------------------------------------------------------------

# National ID: 12-digit number, optionally grouped as XXXX-XXXX-XXXX or
# XXXX XXXX XXXX.  Only the last 4 digits survive.
_NATIONAL_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"\b(\d{4})[\s-]?(\d{4})[\s-]?(\d{4})\b")

# An international number with a country code, or a bare 10-digit number.
# Only the last 4 digits survive.
_PHONE_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?<![\w+])(?:\+\d{1,3}[\s-]?\d{2,8}|\d{6})(\d{4})\b")

_EMAIL_PATTERN: Final[re.Pattern[str]] = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

_IPV4_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b(\d{1,3})\.(\d{1,3})\.\d{1,3}\.\d{1,3}\b"
)

_IPV6_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b([0-9A-Fa-f]{1,4}):([0-9A-Fa-f]{1,4})(?::[0-9A-Fa-f]{0,4}){2,7}\b"
)

# Event keys whose string values are always sanitised.
REDACTED_KEYS: Final[frozenset[str]] = frozenset(
    {"ip_address", "user_agent", "email", "client_ip", "error", "technical_message"}
)


def sanitize_national_id(text: str) -> str:
    """``1234 5678 9012`` becomes ``XXXX-XXXX-9012``."""
    return _NATIONAL_ID_PATTERN.sub(lambda m: f"XXXX-XXXX-{m.group(3)}", text)


def sanitize_phone(text: str) -> str:
    """``+91 9876543210`` becomes ``XXXXXX3210``."""
    return _PHONE_PATTERN.sub(lambda m: f"XXXXXX{m.group(1)}", text)


def sanitize_email(text: str) -> str:
    """Mask email addresses in *text*."""
    return _EMAIL_PATTERN.sub("[EMAIL_REDACTED]", text)


def sanitize_ip(text: str) -> str:
    """Keep the network prefix of IP addresses in *text*.

    ``203.0.113.42`` becomes ``203.0.x.x``; IPv6 addresses keep their first
    two groups.
    """
    text = _IPV4_PATTERN.sub(lambda m: f"{m.group(1)}.{m.group(2)}.x.x", text)
    return _IPV6_PATTERN.sub(lambda m: f"{m.group(1)}:{m.group(2)}::x", text)


def sanitize_pii(text: str) -> str:
    """Apply every sanitiser to *text*.

    IP addresses go first so their octets are not read as phone digits;
    national IDs precede phones since a 12-digit run contains a 10-digit one.
    """
    text = sanitize_ip(text)
    text = sanitize_national_id(text)
    text = sanitize_phone(text)
    return sanitize_email(text)


def redact_pii(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """structlog processor masking PII in the well-known event keys."""
    for key in REDACTED_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = sanitize_pii(value)
    return event_dict
