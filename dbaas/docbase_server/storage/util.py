"""Identifier and timestamp helpers shared by the adapters."""

from __future__ import annotations

import secrets
import string
from datetime import datetime, timezone

OBJECT_ID_LENGTH = 10
_OBJECT_ID_ALPHABET = string.ascii_letters + string.digits


def new_object_id(length: int = OBJECT_ID_LENGTH) -> str:
    """Random alphanumeric object id."""
    return "".join(secrets.choice(_OBJECT_ID_ALPHABET) for _ in range(length))


def utc_timestamp() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
