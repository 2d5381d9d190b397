# db/init.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from utils.settings import get_settings

# ---- Database engine & Session ----
DATABASE_URL = get_settings().database_url
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set in environment (.env)")


def build_engine(url: str):
    """
    SQLite (used by the test suite) needs a shared single connection so an
    in-memory database survives across sessions and threads.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# ---- Base for ORM models ----
Base = declarative_base()


# ---- DB session dependency ----
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ---- Initialization ----
def init_db():
    """
    Imports all model modules to register tables and creates them.
    """
    # Import models so their metadata is registered on Base
    from models import (  # noqa: F401
        clinic,
        subscription_transaction,
        subscription_log,
    )

    Base.metadata.create_all(bind=engine)
