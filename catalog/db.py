# catalog/db.py
"""Database engine and session utilities.

Engines and session factories are built explicitly from `Settings` and handed
to whoever needs them; there is no module-level engine.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from .config import Settings, normalize_db_url

Base = declarative_base()

def make_engine(url: str, settings: Settings = None):
    url = normalize_db_url(url)
    settings = settings or Settings()
    if url.startswith("sqlite"):
        # single shared connection so in-memory databases survive across sessions
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    # tuned pool settings for cloud DB
    return create_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True
    )

def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

def init_schema(engine):
    from . import models  # noqa: F401 ensure models are imported so tables are known
    Base.metadata.create_all(bind=engine)

def session_scope(session_factory):
    """Generator dependency yielding one session per request."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
