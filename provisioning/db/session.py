# provisioning/db/session.py
import time
import logging
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from provisioning.core.config import Settings, settings
from provisioning.core.request_context import SQL_HEAD_MAX, get_request_id, record_db_query

logger = logging.getLogger("provisioning")


def _sql_head(statement: str) -> str:
    if not statement:
        return ""
    # Collapse whitespace + trim. No params logged.
    head = " ".join(statement.split())
    return head[:SQL_HEAD_MAX]


def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    context._provisioning_query_start = time.perf_counter()


def _query_timer(slow_query_ms: float, log_sql: bool):
    """after_cursor_execute hook bound to one engine's thresholds."""

    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start = getattr(context, "_provisioning_query_start", None)
        if start is None:
            return

        duration_ms = (time.perf_counter() - start) * 1000.0
        head = _sql_head(statement)

        record_db_query(duration_ms, head)

        if duration_ms >= slow_query_ms:
            rid = get_request_id()
            if log_sql:
                logger.warning("slow_db_query request_id=%s duration_ms=%.2f sql=%s", rid, duration_ms, head)
            else:
                logger.warning("slow_db_query request_id=%s duration_ms=%.2f", rid, duration_ms)

    return _after_cursor_execute


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: Optional[str] = None, app_settings: Optional[Settings] = None) -> Engine:
    """
    Engine with observability hooks attached.

    Slow-query thresholds come from `app_settings` (module settings when
    omitted). `sqlite://` (in-memory) gets a StaticPool so every session, and
    every worker thread the repositories hop onto, sees the same database.
    """
    s = app_settings or settings
    url = database_url or s.database_url or "sqlite:///./provisioning.db"
    kwargs = {"future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite+pysqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)

    event.listen(engine, "before_cursor_execute", _before_cursor_execute)
    event.listen(
        engine,
        "after_cursor_execute",
        _query_timer(float(s.slow_db_query_ms), bool(s.log_db_sql)),
    )
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True, expire_on_commit=False)
