from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def build_engine(db_url: str, *, debug_checkout: bool = False) -> Engine:
    """
    One engine per process. Postgres gets a sized pool; SQLite gets foreign keys
    and an explicit BEGIN so SAVEPOINTs nest inside a real transaction.
    """
    engine_kwargs: dict[str, object] = {"pool_pre_ping": True}
    if db_url.startswith("postgres"):
        engine_kwargs.update(pool_recycle=1800, pool_size=5, max_overflow=10, pool_timeout=30)
    engine = create_engine(db_url, **engine_kwargs)

    if db_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
            dbapi_connection.isolation_level = None  # pysqlite must not issue its own BEGIN
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):  # type: ignore[no-redef]
            conn.exec_driver_sql("BEGIN")

    if debug_checkout:
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            logger.debug("DB connection checkout from pool")
    return engine


def make_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"], debug_checkout=app.config.get("ENV") != "production")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if getattr(g, "db_session", None) is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    g.db_session = app.extensions["sqlalchemy_sessionmaker"]()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        try:
            s.close()
        finally:
            g.db_session = None


@contextmanager
def _committing(sm: sessionmaker) -> Generator[Session, None, None]:
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """Commit/rollback session on the app's engine, for tests and app-context jobs."""
    with _committing(app.extensions["sqlalchemy_sessionmaker"]) as s:
        yield s


@contextmanager
def script_session(db_url: str) -> Generator[Session, None, None]:
    """Same as session_scope but on a throwaway engine, for CLI scripts without an app."""
    engine = build_engine(db_url)
    try:
        with _committing(make_sessionmaker(engine)) as s:
            yield s
    finally:
        engine.dispose()
