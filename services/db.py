from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Optional

import psycopg2

try:
    from config.settings import settings  # type: ignore
except Exception:  # pragma: no cover - settings import is best effort
    settings = None  # type: ignore

logger = logging.getLogger(__name__)


def _pg_dsn() -> Optional[str]:
    host = os.environ.get("PGHOST")
    db = os.environ.get("PGDATABASE")
    user = os.environ.get("PGUSER")
    pwd = os.environ.get("PGPASSWORD")
    port = os.environ.get("PGPORT")
    sslmode = os.environ.get("PGSSLMODE")

    if settings is not None:
        host = host or getattr(settings, "db_host", None)
        db = db or getattr(settings, "db_name", None)
        user = user or getattr(settings, "db_user", None)
        pwd = pwd or getattr(settings, "db_password", None)
        port = port or str(getattr(settings, "db_port", "5432"))

    if not host:
        return None

    port = port or "5432"
    parts = [f"host={host}", f"port={port}"]
    if db:
        parts.append(f"dbname={db}")
    if user:
        parts.append(f"user={user}")
    if pwd:
        parts.append(f"password={pwd}")
    if sslmode:
        parts.append(f"sslmode={sslmode}")
    return " ".join(parts)


def _sqlite_path() -> str:
    path = os.environ.get("SQLITE_PATH")
    if not path and settings is not None:
        path = getattr(settings, "sqlite_path", None)
    return path or "procwise.sqlite3"


def using_sqlite() -> bool:
    return _pg_dsn() is None


@contextmanager
def get_conn():
    """Yield a database connection.

    PostgreSQL is used whenever a host is configured (``PGHOST`` or
    ``DB_HOST``); otherwise a SQLite file at ``SQLITE_PATH`` is opened.
    PostgreSQL connections run in autocommit mode, SQLite callers commit
    explicitly.
    """

    dsn = _pg_dsn()
    if dsn:
        conn = psycopg2.connect(dsn)
        conn.autocommit = True
    else:
        path = _sqlite_path()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(path, timeout=30)

    try:
        yield conn
    finally:
        try:
            conn.close()
        except Exception:  # pragma: no cover - close failures are not actionable
            logger.debug("Failed to close database connection", exc_info=True)
