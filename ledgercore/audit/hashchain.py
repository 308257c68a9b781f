"""
Hash Chain

Deterministic SHA-256 digests linking each audit record to its predecessor.

Canonical encoding (byte-for-byte, so other implementations can reproduce it):

    UTF-8 of the compact JSON array
        [previous_digest, action_type, resource_type, resource_id,
         actor_id, payload, timestamp]

    - array order is fixed as listed; separators are "," and ":" with no
      whitespace
    - object keys inside ``payload`` are sorted by their UTF-16 code units
      (so U+1F600 sorts before U+FF61), as in RFC 8785
    - strings escape only '"', '\\' and control characters; other
      non-ASCII characters are emitted as-is
    - numbers follow ECMAScript Number-to-String: integral values carry no
      fraction (1.0 -> 1, 1e16 -> 10000000000000000), exponent form only
      from 1e21 upward or below 1e-6 (1e+21, 1.5e-7), -0 is 0; integers
      must lie within +/-(2**53 - 1) and NaN/Infinity are rejected
    - ``actor_id`` is null when absent
    - ``timestamp`` is UTC formatted as YYYY-MM-DDTHH:MM:SS.ffffffZ

The genesis sentinel is the SHA-256 of the empty string. A real record's
digest always covers a non-empty encoding, so it can never equal genesis.
"""

import hashlib
import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


GENESIS_DIGEST = hashlib.sha256(b"").hexdigest()

MAX_SAFE_INTEGER = 2 ** 53 - 1

_DIGEST_PATTERN = re.compile(r"[a-fA-F0-9]{64}")


@dataclass(frozen=True)
class RecordFields:
    """The subset of an audit record covered by its digest."""

    action_type: str
    resource_type: str
    resource_id: str
    actor_id: Optional[str]
    timestamp: datetime
    payload: Any = field(default_factory=dict)


def as_utc(value: datetime) -> datetime:
    """Take a naive timestamp as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a timestamp in the canonical UTC form."""
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _encode_string(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _encode_integer(value: int) -> str:
    if abs(value) > MAX_SAFE_INTEGER:
        raise ValueError(f"Integer {value} is outside the interoperable range +/-{MAX_SAFE_INTEGER}")
    return str(value)


def _encode_float(value: float) -> str:
    if not math.isfinite(value):
        raise ValueError(f"Out of range float values are not JSON compliant: {value!r}")
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""

    # repr gives the shortest digits that round-trip, the same digits ECMAScript picks
    mantissa, _, exponent = repr(abs(value)).partition("e")
    whole, _, fraction = mantissa.partition(".")
    combined = whole + fraction
    significant = combined.lstrip("0")
    leading_zeros = len(combined) - len(significant)
    digits = significant.rstrip("0")

    # value == 0.<digits> * 10**point
    point = len(whole) + int(exponent or 0) - leading_zeros
    count = len(digits)

    if count <= point <= 21:
        return sign + digits + "0" * (point - count)
    if 0 < point <= 21:
        return sign + digits[:point] + "." + digits[point:]
    if -6 < point <= 0:
        return sign + "0." + "0" * -point + digits

    power = point - 1
    head = digits[0] if count == 1 else f"{digits[0]}.{digits[1:]}"
    return f"{sign}{head}e{'+' if power > 0 else '-'}{abs(power)}"


def _utf16_order(key: str) -> bytes:
    return key.encode("utf-16-be", "surrogatepass")


def encode_canonical(value: Any) -> str:
    """Serialize a JSON value in the canonical form described above."""
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return _encode_string(value)
    if isinstance(value, int):
        return _encode_integer(value)
    if isinstance(value, float):
        return _encode_float(value)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(encode_canonical(item) for item in value) + "]"
    if isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be strings, not {type(key).__name__}")
        members = sorted(value.items(), key=lambda item: _utf16_order(item[0]))
        return "{" + ",".join(f"{_encode_string(k)}:{encode_canonical(v)}" for k, v in members) + "}"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_bytes(previous: str, fields: RecordFields) -> bytes:
    """Serialize the digest input in the documented fixed order."""
    content = [
        previous,
        fields.action_type,
        fields.resource_type,
        fields.resource_id,
        fields.actor_id,
        fields.payload,
        format_timestamp(fields.timestamp),
    ]
    return encode_canonical(content).encode("utf-8")


def digest(previous: str, fields: RecordFields) -> str:
    """Compute the hex SHA-256 digest of a record chained to ``previous``."""
    return hashlib.sha256(canonical_bytes(previous, fields)).hexdigest()


def is_digest(value: str) -> bool:
    """Check that a string looks like a hex SHA-256 digest."""
    return isinstance(value, str) and _DIGEST_PATTERN.fullmatch(value) is not None
