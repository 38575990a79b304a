import logging
import re
import time
import uuid
from datetime import date as date_cls
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware

from . import crud, game, models
from .cache import (
    cache_leaderboard,
    get_cache,
    get_cached_leaderboard,
    get_daily_board,
    warm_cache_for_today_and_recent,
)
from .cards import Card, card_to_dict
from .deps import get_session
from .logging_utils import get_logger, request_id_ctx, setup_logging


# Rate limiting - store last request times per IP
_RATE_LIMIT_STORE: dict = {}


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """
    Sliding-window in-memory rate limiting per client IP.
    Returns True if the request is allowed, False if rate limited.
    """
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    cutoff = now - window_seconds
    recent = [t for t in _RATE_LIMIT_STORE.get(client_ip, []) if t > cutoff]
    _RATE_LIMIT_STORE[client_ip] = recent
    if len(recent) >= max_requests:
        return False
    recent.append(now)
    return True


def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60):
    """Create a dependency function that raises HTTP 429 if rate limited"""
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds."
            )
    return dependency


setup_logging(logging.INFO)
logger = get_logger("daily_set")
app = FastAPI(title="Daily Set")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        response = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        except Exception:
            logger.exception("request_error", extra={"path": str(request.url), "method": request.method})
            raise
        finally:
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": getattr(response, "status_code", 500),
                    "duration_ms": int((time.time() - start) * 1000),
                    "client": request.client.host if request.client else "-",
                    "user_agent": request.headers.get("user-agent", "-"),
                },
            )
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
        "http://localhost:5173",     # Vite dev server
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Accept", "Content-Type", "X-Requested-With", "X-Request-ID"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": errors})
    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "body": jsonable_encoder(exc.body),
            "message": "Input validation failed"
        }
    )


@app.on_event("startup")
def on_startup():
    from .init_db import init_db
    from .migrations import run_migrations

    engine = init_db()
    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})
    crud.engine = engine

    try:
        warm_cache_for_today_and_recent()
        logger.info("cache_warm_success")
    except Exception as e:
        logger.warning("cache_warm_failed", extra={"error": str(e)})


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    return JSONResponse({"cache_stats": get_cache().get_stats(), "status": "ok"})


# --- request validation ---------------------------------------------------

_USERNAME_RE = re.compile(r'^[a-zA-Z0-9_-]+$')
_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def _clean_username(v: str) -> str:
    v = v.strip()
    if len(v) == 0:
        raise ValueError('Username cannot be empty')
    if len(v) > 12:
        raise ValueError('Username too long (max 12 characters)')
    if not _USERNAME_RE.match(v):
        raise ValueError('Username can only contain letters, numbers, underscore, and hyphen')
    return v


def _validate_username_param(username: str) -> str:
    uname = (username or "").strip()
    if not uname or len(uname) > 12:
        raise HTTPException(status_code=400, detail="Invalid username")
    if not _USERNAME_RE.match(uname):
        raise HTTPException(status_code=400, detail="Invalid username format")
    return uname


def _validate_date_param(date: str) -> str:
    if not date:
        return game.today_str()
    if not _DATE_RE.match(date):
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")
    try:
        date_cls.fromisoformat(date)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date")
    return date


def _validate_limit_param(limit: int) -> int:
    if limit < 1 or limit > 100:
        raise HTTPException(status_code=400, detail="Limit must be between 1 and 100")
    return limit


class CardIn(BaseModel):
    number: Literal[1, 2, 3]
    shape: Literal["diamond", "oval", "squiggle"]
    color: Literal["red", "green", "purple"]
    shading: Literal["solid", "striped", "empty"]

    def to_card(self) -> Card:
        return Card(self.number, self.shape, self.color, self.shading)


class CheckSetRequest(BaseModel):
    cards: List[CardIn] = Field(..., min_length=3, max_length=3)


class FindSetsRequest(BaseModel):
    board: List[CardIn] = Field(..., max_length=81)


class PlayerCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=12)
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        return _clean_username(v)

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if not re.search(r'[a-z]', v):
            raise ValueError('Password must contain at least one lowercase letter')
        if not re.search(r'[A-Z]', v):
            raise ValueError('Password must contain at least one uppercase letter')
        if not re.search(r'\d', v):
            raise ValueError('Password must contain at least one number')
        return v


class StartSessionRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=12)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        return _clean_username(v)


class SubmitSetRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=100)
    indices: List[int] = Field(..., min_length=3, max_length=3)

    @field_validator('indices')
    @classmethod
    def validate_indices(cls, v):
        if any(idx < 0 for idx in v):
            raise ValueError('Card indices must be non-negative integers')
        if len(set(v)) != 3:
            raise ValueError('All card indices must be unique')
        return v


# --- boards ---------------------------------------------------------------

def _board_payload(board) -> list:
    return [card_to_dict(c) for c in board]


@app.get("/api/daily")
def get_daily(date: str = ""):
    """Today's board (or the board for ``date``). The sets themselves are not revealed."""
    actual_date = _validate_date_param(date)
    result = get_daily_board(actual_date)
    return {
        "date": actual_date,
        "board": _board_payload(result.board),
        "set_count": result.set_count,
    }


@app.get("/api/practice")
def get_practice(
    target_sets: Optional[int] = None,
    size: Optional[int] = None,
    _: None = Depends(rate_limit_dependency(max_requests=30, window_seconds=60))
):
    if target_sets is not None and not 0 <= target_sets <= 20:
        raise HTTPException(status_code=400, detail="target_sets must be between 0 and 20")
    if size is not None and not 3 <= size <= 21:
        raise HTTPException(status_code=400, detail="size must be between 3 and 21")
    target = game.daily_target_sets() if target_sets is None else target_sets
    board_size = size or game.daily_board_size()
    if not game.is_reachable(target, board_size):
        raise HTTPException(
            status_code=400,
            detail=f"no {board_size}-card board holds exactly {target} sets",
        )
    result = game.practice_board(target_sets=target, size=board_size)
    return {
        "board": _board_payload(result.board),
        "set_count": result.set_count,
        "fallback": result.fallback,
    }


@app.post("/api/check_set")
def check_set(body: CheckSetRequest):
    a, b, c = (card.to_card() for card in body.cards)
    return {"valid": game.is_set(a, b, c)}


@app.post("/api/find_sets")
def list_sets(body: FindSetsRequest):
    sets = game.find_sets([card.to_card() for card in body.board])
    return {"sets": [list(t) for t in sets], "count": len(sets)}


# --- players and sessions -------------------------------------------------

@app.post("/api/player", status_code=201)
def create_player(
    body: PlayerCreate,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=5, window_seconds=300))  # 5 accounts per 5 minutes
):
    p = crud.create_player(session, body.username, body.password)
    if not p:
        raise HTTPException(status_code=400, detail="username exists")
    return {"id": p.id, "username": p.username}


def _session_payload(session: Session, gs: models.GameSession) -> dict:
    found = crud.get_found_keys(session, str(gs.id))
    return {
        "session_id": gs.id,
        "date": gs.date,
        "board": _board_payload(crud.session_board(gs)),
        "target_sets": gs.target_sets,
        "found": [[int(i) for i in key.split(",")] for key in found],
        "remaining": max(gs.target_sets - len(found), 0),
        "finished": gs.finished,
        "showed_all_sets": gs.showed_all_sets,
        "start_ts": gs.start_ts.isoformat() if gs.start_ts else None,
        "elapsed_seconds": crud.elapsed_seconds(gs),
    }


@app.post("/api/start_session")
def start_session(
    body: StartSessionRequest,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=20, window_seconds=60))
):
    """Start today's puzzle for a player, or resume the unfinished session."""
    date = game.today_str()
    player = crud.authenticate_player(session, body.username, body.password)
    if not player or player.id is None:
        raise HTTPException(status_code=401, detail="invalid username or password")

    crud.close_stale_sessions(session, player.id, date)
    if crud.get_completion(session, player.id, date) is not None:
        raise HTTPException(status_code=403, detail="Already played today's puzzle")

    gs = crud.get_active_session_for_player_date(session, player.id, date)
    if gs is None:
        result = get_daily_board(date)
        gs = crud.create_session(session, player.id, date, result.board, result.set_count)
        logger.info("session_started", extra={"session_id": gs.id, "player_id": player.id, "date": date})
    return _session_payload(session, gs)


def _load_session(session: Session, sid: str) -> models.GameSession:
    gs = crud.get_session_by_id(session, sid)
    if not gs:
        raise HTTPException(status_code=404, detail="session not found")
    return gs


@app.get("/api/session/{session_id}")
def get_game_session(session_id: str, session: Session = Depends(get_session)):
    """Board, found sets and elapsed time, for resuming a puzzle."""
    return _session_payload(session, _load_session(session, session_id))


def _validate_and_get_cards(indices: List[int], board: List[Card]) -> List[Card]:
    if any(i >= len(board) for i in indices):
        raise HTTPException(status_code=400, detail="index out of range")
    cards = [board[i] for i in indices]
    if not game.is_set(*cards):
        raise HTTPException(status_code=400, detail="not a set")
    return cards


def _handle_session_completion(session: Session, gs: models.GameSession) -> float:
    gs = crud.finish_session(session, str(gs.id))
    seconds = crud.elapsed_seconds(gs)
    if gs.player_id:
        crud.record_completion(session, gs.player_id, gs.date, seconds)
    logger.info("session_completed", extra={"session_id": gs.id, "player_id": gs.player_id, "seconds": seconds})
    return seconds


@app.post("/api/submit_set")
def submit_set(
    body: SubmitSetRequest,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=60, window_seconds=60))
):
    gs = _load_session(session, body.session_id)
    if gs.finished:
        raise HTTPException(status_code=400, detail="session finished")
    today = game.today_str()
    if gs.date < today:
        crud.close_stale_sessions(session, gs.player_id, today)
        raise HTTPException(status_code=400, detail="session expired")
    cards = _validate_and_get_cards(body.indices, crud.session_board(gs))

    key = game.set_key(body.indices)
    fs = crud.record_found_set(session, gs, key, cards)
    found = crud.get_found_keys(session, str(gs.id))

    seconds = None
    completed = len(found) >= gs.target_sets
    if completed:
        seconds = _handle_session_completion(session, gs)
    return {
        "valid": True,
        "duplicate": fs is None,
        "set_key": key,
        "found_count": len(found),
        "remaining": max(gs.target_sets - len(found), 0),
        "completed": completed,
        "seconds": seconds,
    }


@app.post("/api/session/{session_id}/show_sets")
def show_sets(session_id: str, session: Session = Depends(get_session)):
    """Reveal every set on the board. Giving up this way counts as not completed."""
    gs = _load_session(session, session_id)
    sets = game.find_sets(crud.session_board(gs))
    if not gs.finished:
        gs = crud.finish_session(session, session_id, showed_all_sets=True)
        if gs.player_id:
            crud.record_completion(session, gs.player_id, gs.date, crud.elapsed_seconds(gs), showed_all_sets=True)
        logger.info("session_sets_shown", extra={"session_id": session_id, "player_id": gs.player_id})
    return {
        "session_id": session_id,
        "sets": [list(t) for t in sets],
        "showed_all_sets": gs.showed_all_sets,
    }


# --- results --------------------------------------------------------------

@app.get("/api/status")
def status(username: str, date: str = "", session: Session = Depends(get_session)):
    """Return a player's result for the date: whether it was played, time and placement."""
    uname = _validate_username_param(username)
    actual_date = _validate_date_param(date)
    player = crud.get_player_by_username(session, uname)
    detail = crud.get_player_daily_status(session, player.id, actual_date) if player else None
    payload = {"username": uname, "date": actual_date, "played": detail is not None}
    if detail:
        payload.update(detail)
    return payload


@app.get("/api/leaderboard")
def leaderboard(
    date: str = "",
    limit: int = 10,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=20, window_seconds=60))
):
    actual_date = _validate_date_param(date)
    limit = _validate_limit_param(limit)

    leaders = get_cached_leaderboard(actual_date)
    if leaders is None:
        leaders = crud.get_leaderboard(session, actual_date, limit=None)
        cache_leaderboard(actual_date, leaders, ttl_minutes=5)
    return {"date": actual_date, "leaders": leaders[:limit]}


@app.get("/api/leaderboard/all_time")
def leaderboard_all_time(limit: int = 50, session: Session = Depends(get_session)):
    limit = _validate_limit_param(limit)
    return {"leaders": crud.get_all_time_leaderboard(session, limit=limit)}


@app.get("/api/leaderboard/average")
def leaderboard_average(limit: int = 50, session: Session = Depends(get_session)):
    limit = _validate_limit_param(limit)
    return {"leaders": crud.get_average_leaderboard(session, limit=limit)}


@app.get("/api/stats/{username}")
def player_stats(username: str, session: Session = Depends(get_session)):
    uname = _validate_username_param(username)
    player = crud.get_player_by_username(session, uname)
    if not player or player.id is None:
        raise HTTPException(status_code=404, detail="player not found")
    stats = crud.get_player_stats(session, player.id, game.today_str())
    return {"username": uname, **stats}
