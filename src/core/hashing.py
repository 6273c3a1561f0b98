"""Deterministic bucketing.

Every service that buckets users for the same experiments must agree on the
bucket a user lands in, whatever language it is written in. The hash is
therefore fixed: a 32-bit ``h = h * 31 + unit`` rolling hash over the UTF-16
code units of the key, wrapped to a signed 32-bit integer, made non-negative
with ``abs`` and reduced modulo 100.
"""

from __future__ import annotations

from enum import StrEnum

BUCKET_COUNT = 100

_UINT32_MASK = 0xFFFFFFFF
_INT32_SIGN = 0x80000000


class BucketPurpose(StrEnum):
    """Suffix that keeps independent decisions about one user uncorrelated."""

    TRAFFIC = "traffic"
    VARIANT = "variant"
    ROLLOUT = "rollout"


def _utf16_units(text: str) -> list[int]:
    raw = text.encode("utf-16-le")
    return [raw[i] | (raw[i + 1] << 8) for i in range(0, len(raw), 2)]


def hash_string(text: str) -> int:
    """Signed 32-bit rolling hash of ``text``."""
    value = 0
    for unit in _utf16_units(text):
        value = (value * 31 + unit) & _UINT32_MASK
    if value & _INT32_SIGN:
        value -= 1 << 32
    return value


def bucket(key: str) -> int:
    """Map ``key`` to a stable integer in ``[0, 100)``."""
    return abs(hash_string(key)) % BUCKET_COUNT


def bucket_key(user_id: str, purpose: BucketPurpose | str) -> str:
    return f"{user_id}_{purpose}"


def user_bucket(user_id: str, purpose: BucketPurpose | str) -> int:
    """Bucket for one (user, purpose) pair."""
    return bucket(bucket_key(user_id, purpose))
