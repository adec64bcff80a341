"""Shared utility functions used across portal modules."""
from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Naive UTC timestamp.

    SQLite drops tzinfo on the way back, so both storage backends keep naive
    UTC values to compare and serialize identically.
    """
    return datetime.now(UTC).replace(tzinfo=None)
