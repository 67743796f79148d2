"""Epoch-millisecond helpers shared by the state store mirror and the scheduler."""

import time
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], float]

system_clock: Clock = time.time


def now_ms(clock: Clock = system_clock) -> int:
    return int(round(clock() * 1000))


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(round(ensure_utc(value).timestamp() * 1000))


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
