import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import InternalError, ServiceError

log = logging.getLogger("promise_ledger.db")


class Base(DeclarativeBase):
    pass


READ_ONLY = "promise_ledger_read_only"


def _install_sqlite_locking(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; write transactions take the
    # lock up front so read-then-write checks inside them are serialized.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(READ_ONLY):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    def __init__(self, url: str, echo: bool = False, engine: Optional[Engine] = None):
        self.url = url
        if engine is None:
            kwargs = {"echo": echo}
            if url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                if url in ("sqlite://", "sqlite:///:memory:"):
                    kwargs["poolclass"] = StaticPool
            engine = create_engine(url, **kwargs)
            if url.startswith("sqlite"):
                _install_sqlite_locking(engine)
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def create_all(self) -> None:
        from . import tables  # noqa: F401  registers the mappers

        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[Session]:
        """Yield a session inside one transaction.

        Commits on clean exit and rolls back on any exception. Service errors
        propagate unchanged; storage errors are logged and re-raised as
        InternalError so driver details never reach callers.

        ``write=False`` marks a read-only unit of work; on SQLite it opens a
        deferred transaction and does not queue behind writers.
        """
        session = self.session_factory()
        try:
            with session.begin():
                if not write:
                    session.connection(execution_options={READ_ONLY: True})
                yield session
        except ServiceError:
            raise
        except SQLAlchemyError as e:
            log.exception("Storage failure, transaction rolled back")
            raise InternalError("Storage failure") from e
        finally:
            session.close()
