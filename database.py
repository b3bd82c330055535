import time
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import ConflictError, TransientError


# SQLSTATE codes for serialization failure and deadlock.
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.ledger_timeout_secs
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _sqlstate(exc: OperationalError) -> Optional[str]:
    orig = exc.orig
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


@contextmanager
def translate_db_errors() -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        raise ConflictError(f"Conflicting write: {exc.orig}") from exc
    except StaleDataError as exc:
        raise ConflictError("Record was modified concurrently") from exc
    except OperationalError as exc:
        if _sqlstate(exc) in _RETRYABLE_SQLSTATES:
            raise ConflictError(f"Concurrent write conflict: {exc.orig}") from exc
        raise TransientError(f"Storage unavailable: {exc.orig}") from exc


def _apply_statement_timeout(session: Session, timeout_secs: float) -> None:
    if session.get_bind().dialect.name == "postgresql":
        millis = max(1, int(timeout_secs * 1000))
        session.execute(text(f"SET LOCAL statement_timeout = {millis}"))


@contextmanager
def unit_of_work(
    session: Session, *, timeout_secs: Optional[float] = None
) -> Iterator[Session]:
    """Run one atomic write against ``session``.

    Commits when the block exits cleanly and rolls back on any error. The
    whole block is bounded by ``timeout_secs``; overrunning it fails the write
    with a retryable :class:`TransientError` instead of committing late.
    Storage errors are translated into the ``errors`` taxonomy.
    """
    if timeout_secs is None:
        timeout_secs = get_settings().ledger_timeout_secs
    deadline = time.monotonic() + timeout_secs
    try:
        with translate_db_errors():
            _apply_statement_timeout(session, timeout_secs)
            yield session
            if time.monotonic() > deadline:
                raise TransientError(
                    f"Ledger write exceeded {timeout_secs:g}s timeout"
                )
            session.commit()
    except Exception:
        session.rollback()
        raise
