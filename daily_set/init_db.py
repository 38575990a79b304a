import os

from sqlmodel import SQLModel, create_engine

from . import models  # noqa: F401  (registers tables on SQLModel.metadata)
from .logging_utils import get_logger

logger = get_logger("daily_set.init_db")

DEFAULT_DATABASE_URL = "sqlite:///./set.db"


def make_engine(url: str = ""):
    """Create an engine for ``url`` (or DATABASE_URL), pooled unless SQLite."""
    url = url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )


def init_db(url: str = ""):
    engine = make_engine(url)
    SQLModel.metadata.create_all(engine)
    logger.info("db_initialized", extra={"url": str(engine.url)})
    return engine


if __name__ == '__main__':
    from .logging_utils import setup_logging

    setup_logging()
    init_db()
