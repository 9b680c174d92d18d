from __future__ import annotations

import os
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import Session, sessionmaker


DEFAULT_DATABASE_URL = "sqlite:///data/scan_reports.db"


def database_url_from_env() -> str:
    return os.environ.get("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL


def redact_database_url(url: str) -> str:
    raw = (url or "").strip()
    if not raw:
        return ""
    try:
        return make_url(raw).render_as_string(hide_password=True)
    except ArgumentError:
        return raw


def make_engine(url: str, *, extra_options: Mapping[str, Any] | None = None) -> Engine:
    """Build an engine for the report archive.

    PostgreSQL gets a small pre-pinged pool. For file-backed SQLite the parent
    directory is created so a fresh checkout can archive without setup.
    """
    u = make_url(url)
    options: dict[str, Any] = {}
    if u.get_backend_name() == "postgresql":
        options.update(pool_pre_ping=True, pool_size=5, max_overflow=10)
    elif u.get_backend_name() == "sqlite" and u.database and u.database != ":memory:":
        Path(u.database).parent.mkdir(parents=True, exist_ok=True)
    if extra_options:
        options.update(extra_options)
    return create_engine(url, **options)


def engine_from_env() -> Engine:
    return make_engine(database_url_from_env())


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
