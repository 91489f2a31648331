from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from showroom.core.config import get_settings


class Base(DeclarativeBase):
    pass


def _sqlalchemy_dsn(dsn: str) -> str:
    if dsn.startswith("postgresql://"):
        return dsn.replace("postgresql://", "postgresql+psycopg://", 1)
    return dsn


settings = get_settings()
engine = create_engine(_sqlalchemy_dsn(settings.database_url), pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def transaction_scope(session: Session) -> Iterator[Session]:
    """Run a unit of work: commit when the block exits cleanly, roll back on any error."""

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
