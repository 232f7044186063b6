#!/usr/bin/env python3
"""
Version Clock

Time-ordered 128-bit version identifiers (UUIDv7 layout) used to order edits
and deletions across replicas without a central arbiter.

Layout (big-endian):
- 48 bits  millisecond unix timestamp
- 4 bits   version tag (7)
- 12 bits  random ("rand_a")
- 2 bits   RFC-4122 variant (0b10)
- 62 bits  random ("rand_b")

rand_a and rand_b together form a 74-bit random field. Two versions generated
within the same millisecond by one clock get consecutive random fields, so
they always sort in generation order.
"""

from __future__ import annotations

import math
import re
import secrets
import time
from collections.abc import Callable

VERSION_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-7[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

RANDOM_BITS = 74
RANDOM_MASK = (1 << RANDOM_BITS) - 1
TIMESTAMP_MASK = (1 << 48) - 1


def is_version_id(value: object) -> bool:
    """Return True if value is a string in canonical UUIDv7 form."""
    return isinstance(value, str) and VERSION_PATTERN.match(value.strip()) is not None


def compare_versions(a: str | None, b: str | None) -> int:
    """
    Order two version ids.

    Returns -1, 0 or 1. Invalid input on either side compares as equal;
    this function never raises.
    """
    if not is_version_id(a) or not is_version_id(b):
        return 0
    ha = a.strip().replace("-", "").lower()  # type: ignore[union-attr]
    hb = b.strip().replace("-", "").lower()  # type: ignore[union-attr]
    if ha == hb:
        return 0
    return -1 if ha < hb else 1


def timestamp_ms(version: str | None) -> int:
    """Extract the embedded millisecond timestamp, or 0 for invalid input."""
    if not is_version_id(version):
        return 0
    return int(version.strip().replace("-", "")[:12], 16)  # type: ignore[union-attr]


def _format(value: int) -> str:
    h = f"{value:032x}"
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


class VersionClock:
    """Generates monotonic version ids; owns the last timestamp and random field."""

    def __init__(self, random_bits: Callable[[int], int] | None = None) -> None:
        self._random_bits = random_bits or secrets.randbits
        self.last_timestamp_ms: int = -1
        self.last_random: int = 0

    def new_version(self, now_ms: float | None = None) -> str:
        """Generate the next version id for the given (or current) time."""
        if now_ms is None:
            now_ms = time.time() * 1000
        ts = max(0, math.floor(now_ms)) & TIMESTAMP_MASK

        if ts == self.last_timestamp_ms:
            rand = (self.last_random + 1) & RANDOM_MASK
        else:
            rand = self._random_bits(RANDOM_BITS) & RANDOM_MASK

        self.last_timestamp_ms = ts
        self.last_random = rand

        rand_a = rand >> 62
        rand_b = rand & ((1 << 62) - 1)
        value = (ts << 80) | (0x7 << 76) | (rand_a << 64) | (0b10 << 62) | rand_b
        return _format(value)

    @staticmethod
    def random_field(version: str) -> int:
        """Return the 74-bit random field of a version id."""
        if not is_version_id(version):
            raise ValueError(f"not a version id: {version!r}")
        value = int(version.strip().replace("-", ""), 16)
        rand_a = (value >> 64) & 0xFFF
        rand_b = value & ((1 << 62) - 1)
        return (rand_a << 62) | rand_b


_default_clock = VersionClock()


def new_version(now_ms: float | None = None) -> str:
    """Generate a version id from the process-wide clock."""
    return _default_clock.new_version(now_ms)
