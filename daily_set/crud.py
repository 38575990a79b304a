import json
import uuid
from datetime import date as date_cls, datetime, timedelta, timezone
from typing import List, Optional

from passlib.context import CryptContext
from sqlalchemy import func, select as sa_select
from sqlmodel import Session, col, select as sqlmodel_select

from . import models
from .cards import Card, card_from_dict, card_to_dict
from .logging_utils import get_logger

logger = get_logger("daily_set.crud")

pwd = CryptContext(schemes=["bcrypt"], deprecated="auto")
engine = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes; they were written as UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def create_player(session: Session, username: str, password: str):
    if get_player_by_username(session, username):
        return None
    p = models.Player(username=username, password_hash=pwd.hash(password), created_at=_now())
    session.add(p)
    session.commit()
    session.refresh(p)
    logger.info("player_created", extra={"player_id": p.id, "username": username})
    return p


def get_player_by_username(session: Session, username: str):
    return session.exec(sqlmodel_select(models.Player).where(models.Player.username == username)).first()


def authenticate_player(session: Session, username: str, password: str):
    """Return the player when the password matches, otherwise None."""
    p = get_player_by_username(session, username)
    if not p or not p.password_hash:
        return None
    if not pwd.verify(password, p.password_hash):
        return None
    return p


# --- sessions -------------------------------------------------------------

def create_session(session: Session, player_id: Optional[int], date: str, board, target_sets: int):
    gs = models.GameSession(
        id=str(uuid.uuid4()),
        player_id=player_id,
        date=date,
        board_json=json.dumps([card_to_dict(c) for c in board]),
        target_sets=target_sets,
        start_ts=_now(),
        finished=False,
    )
    session.add(gs)
    session.commit()
    session.refresh(gs)
    return gs


def get_session_by_id(session: Session, sid: str):
    return session.get(models.GameSession, sid)


def session_board(gs: models.GameSession) -> List[Card]:
    return [card_from_dict(c) for c in json.loads(gs.board_json or "[]")]


def get_active_session_for_player_date(session: Session, player_id: Optional[int], date: str):
    """Return the most recent unfinished session for this player/date if any."""
    if player_id is None:
        return None
    return session.exec(
        sqlmodel_select(models.GameSession)
        .where(models.GameSession.player_id == player_id)
        .where(models.GameSession.date == date)
        .where(models.GameSession.finished == False)  # noqa: E712
        .order_by(col(models.GameSession.start_ts).desc())
    ).first()


def elapsed_seconds(gs: models.GameSession, now: Optional[datetime] = None) -> float:
    if gs.start_ts is None:
        return 0.0
    end = now or (gs.finished_at if gs.finished and gs.finished_at else _now())
    elapsed = (_as_utc(end) - _as_utc(gs.start_ts)).total_seconds()
    return round(max(elapsed, 0.0), 1)


def finish_session(session: Session, sid: str, showed_all_sets: bool = False):
    gs = session.get(models.GameSession, sid)
    if not gs:
        return None
    gs.finished = True
    gs.showed_all_sets = gs.showed_all_sets or showed_all_sets
    gs.finished_at = _now()
    session.add(gs)
    session.commit()
    session.refresh(gs)
    return gs


def close_stale_sessions(session: Session, player_id: Optional[int], today: str) -> int:
    """Finish unfinished sessions from earlier dates and record them as not completed.

    Returns the number of sessions closed.
    """
    if player_id is None:
        return 0
    stale = session.exec(
        sqlmodel_select(models.GameSession)
        .where(models.GameSession.player_id == player_id)
        .where(models.GameSession.date < today)
        .where(models.GameSession.finished == False)  # noqa: E712
    ).all()
    for gs in stale:
        seconds = elapsed_seconds(gs)
        finish_session(session, str(gs.id), showed_all_sets=True)
        record_completion(session, player_id, gs.date, seconds, showed_all_sets=True)
        logger.info("stale_session_closed", extra={"session_id": gs.id, "date": gs.date})
    return len(stale)


# --- found sets -----------------------------------------------------------

def get_found_keys(session: Session, sid: str) -> List[str]:
    rows = session.exec(
        sqlmodel_select(models.FoundSet.set_key)
        .where(models.FoundSet.session_id == sid)
        .order_by(col(models.FoundSet.id))
    ).all()
    return list(rows)


def record_found_set(session: Session, gs: models.GameSession, key: str, cards) -> Optional[models.FoundSet]:
    """Store a found set for the session; None if it was already found."""
    if key in get_found_keys(session, str(gs.id)):
        return None
    fs = models.FoundSet(
        session_id=str(gs.id),
        player_id=gs.player_id,
        date=gs.date,
        set_key=key,
        cards_json=json.dumps([card_to_dict(c) for c in cards]),
        created_at=_now(),
    )
    session.add(fs)
    session.commit()
    session.refresh(fs)
    return fs


# --- completions ----------------------------------------------------------

def get_completion(session: Session, player_id: Optional[int], date: str):
    if player_id is None:
        return None
    return session.exec(
        sqlmodel_select(models.Completion)
        .where(models.Completion.player_id == player_id)
        .where(models.Completion.date == date)
    ).first()


def record_completion(session: Session, player_id: int, date: str, seconds: float, showed_all_sets: bool = False):
    """Record the player's result for a date.

    A completed result is final: later calls return it unchanged. An
    incomplete result (sets shown) may be replaced.
    """
    comp = get_completion(session, player_id, date)
    if comp and comp.completed:
        return comp
    if comp is None:
        comp = models.Completion(player_id=player_id, date=date, seconds=0.0)
    comp.seconds = round(float(seconds), 1)
    comp.completed = not showed_all_sets
    comp.showed_all_sets = showed_all_sets
    comp.completed_at = _now()
    session.add(comp)
    session.commit()
    session.refresh(comp)
    logger.info(
        "completion_recorded",
        extra={"player_id": player_id, "date": date, "seconds": comp.seconds},
    )

    from .cache import invalidate_leaderboard_cache
    invalidate_leaderboard_cache(date)
    return comp


# --- leaderboards and stats -----------------------------------------------

def get_leaderboard(session: Session, date: str, limit: Optional[int] = 10):
    """Return [{username, seconds, completed_at}] for completed results on a date.

    Sorted by seconds ascending, ties broken by who finished first.
    If limit is None, return all rows.
    """
    stmt = (
        sqlmodel_select(models.Player.username, models.Completion.seconds, models.Completion.completed_at)
        .select_from(models.Player)
        .join(models.Completion, col(models.Completion.player_id) == col(models.Player.id))
        .where(models.Completion.date == date)
        .where(models.Completion.completed == True)  # noqa: E712
        .order_by(col(models.Completion.seconds), col(models.Completion.completed_at))
    )
    if isinstance(limit, int) and limit > 0:
        stmt = stmt.limit(limit)
    return [
        {
            'username': username,
            'seconds': float(seconds),
            'completed_at': completed_at.isoformat() if completed_at else None,
        }
        for username, seconds, completed_at in session.exec(stmt).all()
    ]


def get_all_time_leaderboard(session: Session, limit: int = 50):
    """Best completed time per player, with the earliest date it was set."""
    best_subq = (
        sa_select(
            col(models.Completion.player_id).label('pid'),
            func.min(models.Completion.seconds).label('best')
        )
        .where(models.Completion.completed == True)  # noqa: E712
        .group_by(models.Completion.player_id)
    ).subquery()

    first_date = func.min(models.Completion.date).label('date')
    stmt = (
        sa_select(models.Player.username, best_subq.c.best, first_date)
        .select_from(models.Player)
        .join(best_subq, models.Player.id == best_subq.c.pid)
        .join(
            models.Completion,
            (models.Completion.player_id == best_subq.c.pid)
            & (models.Completion.seconds == best_subq.c.best)
            & (models.Completion.completed == True)  # noqa: E712
        )
        .group_by(models.Player.username, best_subq.c.best)
        .order_by(best_subq.c.best, first_date)
        .limit(limit)
    )
    rows = session.execute(stmt).all()
    return [{'username': u, 'seconds': float(best), 'date': d} for u, best, d in rows]


def get_average_leaderboard(session: Session, limit: int = 50, min_completions: int = 3):
    """Average completed time per player; players need min_completions to qualify."""
    n = func.count(models.Completion.id)
    avg = func.avg(models.Completion.seconds)
    stmt = (
        sa_select(models.Player.username, avg.label('average'), n.label('completions'))
        .select_from(models.Player)
        .join(models.Completion, models.Completion.player_id == models.Player.id)
        .where(models.Completion.completed == True)  # noqa: E712
        .group_by(models.Player.id, models.Player.username)
        .having(n >= min_completions)
        .order_by(avg)
        .limit(limit)
    )
    rows = session.execute(stmt).all()
    return [
        {'username': u, 'average': round(float(a), 1), 'completions': int(c)}
        for u, a, c in rows
    ]


def get_player_daily_status(session: Session, player_id: Optional[int], date: str):
    """Return {seconds, completed, showed_all_sets, completed_at, placement} or None.

    placement is 1-indexed on the daily leaderboard, None for incomplete days.
    """
    comp = get_completion(session, player_id, date)
    if comp is None:
        return None
    placement = None
    if comp.completed:
        player = session.get(models.Player, player_id)
        leaders = get_leaderboard(session, date, limit=None)
        for idx, row in enumerate(leaders, start=1):
            if player and row['username'] == player.username:
                placement = idx
                break
    return {
        'seconds': comp.seconds,
        'completed': comp.completed,
        'showed_all_sets': comp.showed_all_sets,
        'completed_at': comp.completed_at.isoformat() if comp.completed_at else None,
        'placement': placement,
    }


def _completed_dates(session: Session, player_id: int) -> List[str]:
    rows = session.exec(
        sqlmodel_select(models.Completion.date)
        .where(models.Completion.player_id == player_id)
        .where(models.Completion.completed == True)  # noqa: E712
    ).all()
    return sorted(set(rows))


def get_completion_streak(session: Session, player_id: int, today: str) -> int:
    """Consecutive completed days ending today; 0 until today is completed."""
    done = set(_completed_dates(session, player_id))
    day = date_cls.fromisoformat(today)
    streak = 0
    while day.isoformat() in done:
        streak += 1
        day -= timedelta(days=1)
    return streak


def get_longest_streak(session: Session, player_id: int) -> int:
    longest = run = 0
    prev = None
    for d in _completed_dates(session, player_id):
        day = date_cls.fromisoformat(d)
        run = run + 1 if prev is not None and day - prev == timedelta(days=1) else 1
        longest = max(longest, run)
        prev = day
    return longest


def get_player_stats(session: Session, player_id: int, today: str, recent: int = 30):
    rows = session.exec(
        sqlmodel_select(models.Completion)
        .where(models.Completion.player_id == player_id)
        .order_by(col(models.Completion.date).desc())
    ).all()
    times = [c.seconds for c in rows if c.completed]
    by_month: dict = {}
    for c in rows:
        if c.completed:
            month = c.date[:7]
            by_month[month] = by_month.get(month, 0) + 1
    return {
        'total_completions': len(times),
        'did_not_completes': sum(1 for c in rows if not c.completed),
        'best_time': min(times) if times else None,
        'average_time': round(sum(times) / len(times), 1) if times else None,
        'completions_by_month': by_month,
        'recent': [
            {'date': c.date, 'seconds': c.seconds, 'completed': c.completed}
            for c in rows[:recent]
        ],
        'current_streak': get_completion_streak(session, player_id, today),
        'longest_streak': get_longest_streak(session, player_id),
    }
