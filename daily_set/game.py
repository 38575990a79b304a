import itertools
import os
import random
from dataclasses import dataclass
from typing import ClassVar, List, Optional, Sequence, Tuple

from .cards import Card, all_cards, is_set
from .logging_utils import get_logger
from .rng import RandomSource, SeededRandom, date_seed, today_str

logger = get_logger("daily_set.game")

MAX_ATTEMPTS = 10000
PRACTICE_MAX_ATTEMPTS = 1000
# the largest set-free collection in the deck has 20 cards
MAX_SET_FREE_SIZE = 20
DEFAULT_BOARD_SIZE = 12
DEFAULT_TARGET_SETS = 6

Triple = Tuple[int, int, int]


def daily_target_sets() -> int:
    return int(os.getenv("DAILY_TARGET_SETS", str(DEFAULT_TARGET_SETS)))


def daily_board_size() -> int:
    return int(os.getenv("DAILY_BOARD_SIZE", str(DEFAULT_BOARD_SIZE)))


def max_set_count(board_size: int) -> int:
    # a pair of cards completes to exactly one third card, so sets never share a pair
    return board_size * (board_size - 1) // 6


def is_reachable(target_sets: int, board_size: int) -> bool:
    """False when no board of ``board_size`` cards can hold exactly ``target_sets`` sets."""
    if target_sets < 0 or target_sets > max_set_count(board_size):
        return False
    return not (target_sets == 0 and board_size > MAX_SET_FREE_SIZE)


def find_sets(board: Sequence[Card]) -> List[Triple]:
    """Return every (i, j, k) with i < j < k whose cards form a set.

    Triples come out in ascending lexicographic order.
    """
    sets = []
    for i, j, k in itertools.combinations(range(len(board)), 3):
        if is_set(board[i], board[j], board[k]):
            sets.append((i, j, k))
    return sets


def set_key(indices) -> str:
    return ",".join(str(i) for i in sorted(indices))


def shuffle(cards: Sequence, rng: RandomSource) -> list:
    # Fisher-Yates from the end; swap index drawn as floor(r * (i + 1))
    out = list(cards)
    for i in range(len(out) - 1, 0, -1):
        j = int(rng.random() * (i + 1))
        out[i], out[j] = out[j], out[i]
    return out


@dataclass(frozen=True)
class BoardResult:
    board: List[Card]
    attempts: int
    sets: List[Triple]

    fallback: ClassVar[bool] = False

    @property
    def set_count(self) -> int:
        return len(self.sets)


@dataclass(frozen=True)
class Generated(BoardResult):
    """A board whose set count matched the target exactly."""


@dataclass(frozen=True)
class FallbackUsed(BoardResult):
    """A board drawn after every attempt missed the target; its count may differ."""

    fallback: ClassVar[bool] = True


def generate_board(
    target_sets: int,
    board_size: int = DEFAULT_BOARD_SIZE,
    seed: Optional[int] = None,
    rng: Optional[RandomSource] = None,
    max_attempts: int = MAX_ATTEMPTS,
) -> BoardResult:
    """Draw boards until one holds exactly ``target_sets`` sets.

    The shuffle source is ``rng`` when given, otherwise a SeededRandom for
    ``seed``, otherwise an unseeded ``random.Random``. The source keeps its
    state across attempts, so the sequence of candidates for a seed is fixed.
    Never fails for a valid size: after ``max_attempts`` misses one more
    board is drawn from the same source and returned as FallbackUsed.
    """
    deck = all_cards()
    if not 0 < board_size <= len(deck):
        raise ValueError(f"board_size must be between 1 and {len(deck)}")
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if rng is None:
        rng = SeededRandom(seed) if seed is not None else random.Random()

    for attempt in range(1, max_attempts + 1):
        board = shuffle(deck, rng)[:board_size]
        sets = find_sets(board)
        if len(sets) == target_sets:
            return Generated(board=board, attempts=attempt, sets=sets)

    board = shuffle(deck, rng)[:board_size]
    sets = find_sets(board)
    logger.warning(
        "board_generation_fallback",
        extra={
            "target_sets": target_sets,
            "board_size": board_size,
            "attempts": max_attempts,
            "set_count": len(sets),
        },
    )
    return FallbackUsed(board=board, attempts=max_attempts, sets=sets)


def daily_board(date: str = "", target_sets: Optional[int] = None, size: Optional[int] = None) -> BoardResult:
    date = date or today_str()
    target = daily_target_sets() if target_sets is None else target_sets
    result = generate_board(target, size or daily_board_size(), seed=date_seed(date))
    if result.fallback:
        logger.warning("daily_board_fallback", extra={"date": date, "target_sets": target})
    return result


def practice_board(
    target_sets: Optional[int] = None,
    size: Optional[int] = None,
    rng: Optional[RandomSource] = None,
    max_attempts: int = PRACTICE_MAX_ATTEMPTS,
) -> BoardResult:
    target = daily_target_sets() if target_sets is None else target_sets
    return generate_board(target, size or daily_board_size(), rng=rng, max_attempts=max_attempts)
