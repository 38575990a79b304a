"""
Randomness sources for board generation.

Daily boards are shuffled with a small linear congruential generator so the
same calendar date always produces the same board, in this and any other
implementation that uses the same constants. Practice boards use any object
with a ``random()`` method, ``random.Random`` included.
"""

import datetime
import re
from typing import Optional, Protocol
from zoneinfo import ZoneInfo


# the daily puzzle rolls over at midnight US Eastern for every player
DAILY_TZ = ZoneInfo("America/New_York")

LCG_MULTIPLIER = 9301
LCG_INCREMENT = 49297
LCG_MODULUS = 233280

_DATE_RE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})$')


class RandomSource(Protocol):
    def random(self) -> float:
        ...


class SeededRandom:
    """Deterministic stream of floats in [0, 1) driven by an integer seed."""

    def __init__(self, seed: int):
        self.state = seed

    def next(self) -> float:
        self.state = (self.state * LCG_MULTIPLIER + LCG_INCREMENT) % LCG_MODULUS
        return self.state / LCG_MODULUS

    def random(self) -> float:
        return self.next()


def date_seed(date: str) -> int:
    m = _DATE_RE.match(date or "")
    if not m:
        raise ValueError(f"date must be YYYY-MM-DD, got {date!r}")
    year, month, day = (int(part) for part in m.groups())
    return year * 10000 + month * 100 + day


def today_str(now: Optional[datetime.datetime] = None) -> str:
    """Return today's puzzle date (YYYY-MM-DD) in the daily time zone.

    ``now`` may be naive (treated as UTC) or aware; defaults to the current time.
    """
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    return now.astimezone(DAILY_TZ).date().isoformat()
