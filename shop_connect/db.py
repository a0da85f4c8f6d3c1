"""Engine and sessions for the service's own bookkeeping tables.

Only pending OAuth states and webhook delivery receipts live here; merchant
credentials are owned by Base44.
"""

from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from shop_connect.config import settings
from shop_connect.models import Base


def build_state_engine(url: str) -> Engine:
    # SQLite connections are shared across the threadpool that runs sync routes.
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, connect_args=connect_args)


state_engine: Engine = build_state_engine(settings.STATE_DB_URL)
StateSession = sessionmaker(bind=state_engine, autoflush=False, autocommit=False, future=True)


def create_state_tables() -> None:
    Base.metadata.create_all(bind=state_engine)


def get_session() -> Iterator[Session]:
    session = StateSession()
    try:
        yield session
    finally:
        session.close()
