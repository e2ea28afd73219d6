from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


class PersistenceUnavailable(RuntimeError):
    pass


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
        configure_sqlite_transactions(eng)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _disable_pysqlite_autobegin(dbapi_conn, _record):
    dbapi_conn.isolation_level = None


def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


def configure_sqlite_transactions(eng: Engine) -> Engine:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs nest inside the outer transaction."""
    event.listen(eng, "connect", _disable_pysqlite_autobegin)
    event.listen(eng, "begin", _emit_begin)
    return eng


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def check_connection(eng: Engine = engine) -> None:
    """Raise ``PersistenceUnavailable`` when the store cannot be reached."""
    try:
        with eng.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable(
            f"Database unavailable at {eng.url.render_as_string(hide_password=True)}"
        ) from exc


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
