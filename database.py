import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, delete, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from errors import StoreError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _is_memory_url(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or (
        database_url.startswith("sqlite") and ":memory:" in database_url
    )


def _create_engine(database_url: str) -> Engine:
    kwargs: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_url(database_url):
            kwargs["poolclass"] = StaticPool

    eng = create_engine(database_url, **kwargs)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def create_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    """Open the store and make sure the schema exists.

    The returned factory is the store handle for the whole process. Any
    failure here is fatal to the caller.
    """
    # models must be imported so their tables are registered on Base.metadata
    import models  # noqa: F401

    url = database_url or get_settings().database_url
    try:
        eng = _create_engine(url)
        Base.metadata.create_all(eng)
    except SQLAlchemyError as exc:
        raise StoreError(f"Cannot initialise store at {url}: {exc}") from exc
    logger.info(f"store_opened: url={eng.url.render_as_string(hide_password=True)}")
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


def close_session_factory(factory: sessionmaker) -> None:
    eng = factory.kw.get("bind")
    if eng is not None:
        eng.dispose()
        logger.info("store_closed")


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_ledger(session: Session) -> None:
    """Remove every transaction and budget and restart id assignment.

    Runs as one unit: either both tables are emptied and their sequences
    cleared, or nothing changes.
    """
    from models import Budget, Transaction

    tables = [Transaction, Budget]
    try:
        for model in tables:
            session.execute(delete(model))
        if session.get_bind().dialect.name == "sqlite":
            for model in tables:
                session.execute(
                    text("DELETE FROM sqlite_sequence WHERE name = :name"),
                    {"name": model.__tablename__},
                )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StoreError(f"Reset failed: {exc}") from exc
    logger.info("ledger_reset: tables=transactions,budgets")
