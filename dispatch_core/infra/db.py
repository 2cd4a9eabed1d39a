from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, create_engine

from dispatch_core.domain.errors import UpstreamUnavailableError
from dispatch_core.infra.log import get_logger

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://dispatch:dispatch@db:5432/dispatch_core",
)

engine = create_engine(DATABASE_URL, pool_pre_ping=True)

logger = get_logger(__name__)


def get_engine() -> Engine:
    return engine


def open_session() -> Session:
    return Session(get_engine(), expire_on_commit=False)


@contextmanager
def datastore_guard(operation: str) -> Iterator[None]:
    """Re-raise connectivity failures as UpstreamUnavailableError."""
    try:
        yield
    except OperationalError as exc:
        logger.error("datastore_unavailable", operation=operation, error=str(exc.orig))
        raise UpstreamUnavailableError(f"datastore unavailable during {operation}") from exc


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
