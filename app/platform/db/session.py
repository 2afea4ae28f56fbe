from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.platform.config import settings

# One shared sync engine for the API process and Celery workers
_engine = None
_session_factory = None


def sync_database_url(db_url: str) -> str:
    """Convert async driver URLs to their sync equivalents."""
    if db_url.startswith("postgresql+asyncpg://"):
        return db_url.replace("postgresql+asyncpg://", "postgresql://", 1)
    if db_url.startswith("sqlite+aiosqlite://"):
        return db_url.replace("sqlite+aiosqlite://", "sqlite://", 1)
    return db_url


def get_engine() -> Engine:
    global _engine

    if _engine is None:
        db_url = sync_database_url(settings.DATABASE_URL)
        if db_url.startswith("sqlite"):
            _engine = create_engine(
                db_url,
                connect_args={"check_same_thread": False},
                future=True,
            )
        else:
            _engine = create_engine(
                db_url,
                future=True,
                pool_size=20,
                max_overflow=30,  # (burst capacity)
                pool_timeout=30,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory

    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            class_=Session,
            autoflush=False,
            expire_on_commit=False,
        )
    return _session_factory


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that provides a DB session and ensures proper closing."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create missing tables. Existing tables are left untouched."""
    from app.platform.db.base import Base
    import app.features.analysis.models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=get_engine())
