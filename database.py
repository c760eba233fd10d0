from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import BudgetCoreError, ConflictError, StorageError


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    engine_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.storage_timeout_secs
    else:
        engine_args["pool_timeout"] = settings.storage_timeout_secs
        engine_args["pool_pre_ping"] = True
    from sqlalchemy import create_engine

    eng = create_engine(
        settings.database_url, connect_args=connect_args, **engine_args
    )
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


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit the enclosed unit of work or roll all of it back.

    Driver failures are surfaced as ConflictError (optimistic version clash,
    unique-key race) or StorageError (anything else SQLAlchemy raises).
    """
    try:
        yield session
        session.commit()
    except BudgetCoreError:
        session.rollback()
        raise
    except StaleDataError as exc:
        session.rollback()
        raise ConflictError("Budget was modified concurrently", str(exc)) from exc
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError("Concurrent write on the same budget key", str(exc)) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError("Storage unavailable", str(exc)) from exc
    except Exception:
        session.rollback()
        raise
