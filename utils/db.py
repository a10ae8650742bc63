# utils/db.py
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from config import SQLALCHEMY_URL

_engine = None

def get_engine(url: str | None = None) -> Engine:
    """Shared engine for the configured database; pass a url for a one-off engine."""
    global _engine
    if url is not None:
        return create_engine(url, pool_pre_ping=True)
    if _engine is None:
        _engine = create_engine(SQLALCHEMY_URL, pool_pre_ping=True)
    return _engine
