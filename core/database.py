# core/database.py
import logging
from typing import Generator

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from core.config import settings

logger = logging.getLogger(__name__)

# Seconds a SQLite writer waits on a locked database before giving up
SQLITE_BUSY_TIMEOUT = 30


# ============================================================
# ✅ Engine
# ============================================================
def make_engine(url: str, **kwargs) -> Engine:
    """
    Engine for ``url``. SQLite connections are shared across threads and
    wait for the write lock instead of failing straight away, which the hour
    ledger's conditional updates rely on.
    """
    connect_args = kwargs.pop("connect_args", {})
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT, **connect_args}
    # pool_pre_ping avoids stale PostgreSQL connections
    return create_engine(url, echo=False, pool_pre_ping=True, connect_args=connect_args, **kwargs)


if settings.DATABASE_URL.startswith("sqlite"):
    logger.warning("⚠️ Using local SQLite database: %s", settings.DATABASE_URL)
else:
    logger.info("✅ Using database from environment.")

engine = make_engine(settings.DATABASE_URL)


# ============================================================
# ✅ Schema
# ============================================================
def create_db_and_tables() -> None:
    """Create every table registered on SQLModel.metadata. Runs at app startup."""
    import models.models  # noqa: F401

    try:
        SQLModel.metadata.create_all(engine)
        logger.info("✅ Database schema is up to date.")
    except Exception as e:
        logger.error(f"❌ Failed to create tables: {e}")
        raise


# ============================================================
# ✅ Request-scoped session
# ============================================================
def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
