from fastapi import HTTPException
from sqlmodel import Session

from . import crud


def get_session():
    """Yield a database session bound to the engine configured at startup."""
    if crud.engine is None:
        raise HTTPException(status_code=503, detail="database not initialized")
    with Session(crud.engine) as session:
        yield session
