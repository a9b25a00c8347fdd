# src/tabula/substrate/database.py
"""SQLAlchemy engine for the shared substrate.

SQLite serves several processes on one host (WAL journal, busy timeout so
brief write contention waits instead of failing). PostgreSQL serves several
hosts and needs no pragmas.
"""

from pathlib import Path
from typing import Self

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import StaticPool

from tabula.core.config import SubstrateSettings
from tabula.substrate.schema import metadata

logger = structlog.get_logger(__name__)


def _install_sqlite_pragmas(engine: Engine, busy_timeout_ms: int) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: object, connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()


class SubstrateDB:
    """Owns the engine shared by SqlCacheBackend, SqlPropertyStore and SqlLockService.

    Example:
        with SubstrateDB("sqlite:///./state/tabula.db") as db:
            substrate = sql_substrate(db)
    """

    def __init__(self, url: str, *, busy_timeout_ms: int = 5000, create_tables: bool = True) -> None:
        self.url = url
        parsed = make_url(url)
        self.is_sqlite = parsed.get_backend_name() == "sqlite"
        if self.is_sqlite:
            database = parsed.database
            if database and database != ":memory:" and not database.startswith("file:"):
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            # Pooled connections are handed between request threads
            engine = create_engine(url, connect_args={"check_same_thread": False})
            _install_sqlite_pragmas(engine, busy_timeout_ms)
        else:
            engine = create_engine(url, pool_pre_ping=True)
        self._engine: Engine | None = engine
        if create_tables:
            metadata.create_all(engine)
        logger.debug("Substrate database ready", backend=parsed.get_backend_name())

    @classmethod
    def from_settings(cls, settings: SubstrateSettings) -> Self:
        return cls(settings.url, busy_timeout_ms=settings.busy_timeout_ms)

    @classmethod
    def in_memory(cls) -> Self:
        """Private in-memory SQLite database for tests.

        One connection serves every thread (StaticPool), so all components
        built on this instance see the same tables.
        """
        engine = create_engine(
            "sqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        metadata.create_all(engine)
        instance = cls.__new__(cls)
        instance.url = "sqlite:///:memory:"
        instance.is_sqlite = True
        instance._engine = engine
        return instance

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Substrate database is closed")
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()
