"""
Database Engine & Session Management
SQLAlchemy setup with dependency injection for FastAPI.

Two ways in:
- ``get_db`` yields a plain request session for reads done on behalf of
  an authenticated caller.
- ``ServiceContext`` is the elevated path. Only the activation and webhook
  services receive one, and they never take the caller's identity as
  authorization for what they write.
"""
import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from ajo.config import get_settings

settings = get_settings()


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not url.startswith("sqlite:///") or url.endswith(":memory:"):
        return
    directory = os.path.dirname(url.replace("sqlite:///", "", 1))
    if directory:
        os.makedirs(directory, exist_ok=True)


def build_engine(url: str, echo: bool = False):
    """Create an engine; SQLite connections are shared across request threads."""
    connect_args = {}
    if url.startswith("sqlite"):
        _ensure_sqlite_dir(url)
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, connect_args=connect_args, echo=echo)


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a database session, auto-closes on finish."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class ServiceContext:
    """Elevated data access for payment activation.

    Holds its own session factory so that it can open one short
    transaction per activation attempt, independent of any request
    session.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only scope. Nothing is committed."""
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Commit on clean exit, roll back on any exception."""
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def get_service_context() -> ServiceContext:
    """FastAPI dependency: the elevated execution context."""
    return ServiceContext(SessionLocal)


def init_db(bind=None):
    """Create all tables. Called once at application startup."""
    from ajo.models import payment as _payment_model   # noqa: F401
    from ajo.models import group as _group_model       # noqa: F401
    from ajo.models import ledger as _ledger_model     # noqa: F401
    from ajo.models import webhook as _webhook_model   # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
