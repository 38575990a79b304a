from typing import Optional
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field
from datetime import datetime


class Player(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    created_at: Optional[datetime] = None


class GameSession(SQLModel, table=True):
    id: Optional[str] = Field(default=None, primary_key=True)
    player_id: Optional[int] = Field(default=None, foreign_key="player.id")
    date: str = ""  # YYYY-MM-DD
    board_json: str = ""
    target_sets: int = 0
    start_ts: Optional[datetime] = None
    finished: bool = False
    showed_all_sets: bool = False
    finished_at: Optional[datetime] = None


class FoundSet(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(foreign_key="gamesession.id")
    player_id: Optional[int] = None
    date: str
    set_key: str  # "i,j,k" ascending board positions
    cards_json: str = "[]"
    created_at: Optional[datetime] = None


class Completion(SQLModel, table=True):
    # one result per player per day
    __table_args__ = (UniqueConstraint("player_id", "date", name="uq_completion_player_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    player_id: int = Field(foreign_key="player.id")
    date: str  # YYYY-MM-DD
    seconds: float  # rounded to tenths
    completed: bool = True
    showed_all_sets: bool = False
    completed_at: Optional[datetime] = None
