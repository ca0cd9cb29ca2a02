"""Identifier and timestamp helpers.

Ids are a base-36 millisecond time seed plus a random base-36 suffix.  That
is enough to be unique for the lifetime of one relay process; callers that
hold a table of live ids still re-draw on the (unlikely) collision.  Nothing
here needs to be unguessable: the trust boundary is the LAN.
"""

from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone

_ALPHABET = string.digits + string.ascii_lowercase


def now_ms() -> int:
    return int(time.time() * 1000)


def to_base36(value: int) -> str:
    """Return *value* (non-negative) in base 36, lowercase."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def new_client_id() -> str:
    return f"client_{to_base36(now_ms())}_{random_suffix(9)}"


def new_room_id() -> str:
    return f"{to_base36(now_ms())}{random_suffix(5)}"


def new_transfer_id() -> str:
    return f"tx_{to_base36(now_ms())}{random_suffix(6)}"


def iso_timestamp(ts: float) -> str:
    """Format a Unix timestamp as ISO-8601 UTC with millisecond precision."""
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")
