import math
import os
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from .utils import resolve_sqlite_url

# Get DB url
load_dotenv()
# Project root directory (repo root)
ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_SQLITE_URL = resolve_sqlite_url(
    os.getenv("DB_URL", "sqlite:///./dev.db"), ROOT_DIR
)

DEFAULT_SQLITE_BUSY_TIMEOUT = 30.0

# Seconds a transaction begun in the current context may wait on locks.
_lock_budget: ContextVar[Optional[float]] = ContextVar("lock_budget", default=None)


@contextmanager
def lock_wait_budget(seconds: float) -> Iterator[None]:
    """Bound lock waits of transactions begun inside the block to ``seconds``."""
    token = _lock_budget.set(max(0.0, seconds))
    try:
        yield
    finally:
        _lock_budget.reset(token)


def _budget_ms(default: Optional[float]) -> Optional[int]:
    budget = _lock_budget.get()
    if budget is None:
        budget = default
    if budget is None:
        return None
    return math.ceil(budget * 1000)


def make_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    *,
    sqlite_busy_timeout: float = DEFAULT_SQLITE_BUSY_TIMEOUT,
):
    url = database_url or DEFAULT_SQLITE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"timeout": sqlite_busy_timeout, "check_same_thread": False}
    engine = create_engine(
        url,
        echo=echo,
        future=True,
        connect_args=connect_args,
    )
    if url.startswith("sqlite"):
        # pysqlite defers BEGIN until the first write, so two readers can both
        # try to upgrade to a write lock and one fails without waiting. Take
        # the write lock up front so the busy timeout applies.
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            # Pooled connections keep the last value, so always set it.
            conn.exec_driver_sql(f"PRAGMA busy_timeout = {_budget_ms(sqlite_busy_timeout)}")
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    elif url.startswith("postgresql"):

        @event.listens_for(engine, "begin")
        def _set_statement_timeout(conn):
            budget_ms = _budget_ms(None)
            if budget_ms is not None:
                conn.exec_driver_sql(f"SET LOCAL statement_timeout = {max(budget_ms, 1)}")

    return engine


def get_sessionmaker(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
