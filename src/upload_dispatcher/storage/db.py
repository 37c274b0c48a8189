"""
Engine и сессии SQLAlchemy для SQL-бэкенда очереди.

Назначение:
- создание engine по URL хранилища
- контекстный менеджер для сессий
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
def create_store_engine(url: str | URL) -> Engine:
    kwargs: dict = {"pool_pre_ping": True}
    backend = url.get_backend_name() if isinstance(url, URL) else str(url).split(":", 1)[0]
    if backend.startswith("sqlite"):
        # соединения используются из потока диспетчера и из потоков HTTP
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    Использование:
        with session_scope(factory) as session:
            session.add(...)
    """
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
