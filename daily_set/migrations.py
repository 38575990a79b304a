"""
Database migrations for the Daily Set service.
Each migration is a named batch of SQL statements applied at most once;
applied names are recorded in the ``migration`` table.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, Session, SQLModel, select, text

from .logging_utils import get_logger

logger = get_logger("daily_set.migrations")


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    (
        "001_leaderboard_indexes",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_completion_player_date ON completion(player_id, date);
        CREATE INDEX IF NOT EXISTS idx_completion_date_completed_seconds ON completion(date, completed, seconds)
        """,
    ),
    (
        "002_session_indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_session_player_date ON gamesession(player_id, date);
        CREATE INDEX IF NOT EXISTS idx_session_finished ON gamesession(finished);
        CREATE INDEX IF NOT EXISTS idx_foundset_session ON foundset(session_id)
        """,
    ),
]


def ensure_migration_table(engine):
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine, migration_name: str) -> bool:
    ensure_migration_table(engine)
    with Session(engine) as session:
        result = session.exec(select(Migration).where(Migration.name == migration_name)).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False if it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.debug("migration_skipped", extra={"migration": migration_name})
        return False

    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("migration_failed", extra={"migration": migration_name, "error": str(e)})
            raise

    logger.info("migration_applied", extra={"migration": migration_name})
    return True


def run_migrations(engine) -> list[str]:
    """Run all pending migrations, returning the names applied this run"""
    applied = [name for name, sql in MIGRATIONS if apply_migration(engine, name, sql)]
    logger.info("migrations_complete")
    return applied


if __name__ == "__main__":
    from .init_db import init_db
    from .logging_utils import setup_logging

    setup_logging()
    run_migrations(init_db())
