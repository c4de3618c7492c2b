"""Mapping between wall-clock instants and beacon rounds.

Rounds are 1-indexed: round 1 is published at the chain genesis and every
following round ``period`` seconds later. All functions are pure apart from
``is_round_available`` which reads the clock when ``now`` is omitted.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional, Union

from .constants import QUICKNET_GENESIS_TIME, QUICKNET_PERIOD


Instant = Union[int, float, datetime]


def to_timestamp(instant: Instant) -> int:
    """Whole Unix seconds for ``instant``; naive datetimes are taken as UTC."""
    if isinstance(instant, datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return int(instant.timestamp())
    return int(instant)


def timestamp_to_round(
    timestamp: Instant,
    *,
    genesis: int = QUICKNET_GENESIS_TIME,
    period: int = QUICKNET_PERIOD,
) -> int:
    t = to_timestamp(timestamp)
    if t <= genesis:
        return 1
    return (t - genesis) // period + 1


def round_to_timestamp(
    round_number: int,
    *,
    genesis: int = QUICKNET_GENESIS_TIME,
    period: int = QUICKNET_PERIOD,
) -> int:
    if round_number <= 1:
        return genesis
    return genesis + (round_number - 1) * period


def unlock_instant_to_target_round(
    unlock_instant: Instant,
    *,
    genesis: int = QUICKNET_GENESIS_TIME,
    period: int = QUICKNET_PERIOD,
) -> int:
    """Round to encrypt for so decryption is impossible before ``unlock_instant``.

    The extra round keeps the publication time at or after the requested
    instant. Existing containers were written with this margin; keep it.
    """
    return timestamp_to_round(unlock_instant, genesis=genesis, period=period) + 1


def is_round_available(
    round_number: int,
    now: Optional[float] = None,
    *,
    genesis: int = QUICKNET_GENESIS_TIME,
    period: int = QUICKNET_PERIOD,
) -> bool:
    if now is None:
        now = time.time()
    return round_to_timestamp(round_number, genesis=genesis, period=period) <= now
