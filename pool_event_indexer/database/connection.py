"""
Engine and session management for the indexer database.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, event, func, inspect, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pool_event_indexer.config.models import DatabaseConfig
from pool_event_indexer.database.models import Base

logger = logging.getLogger(__name__)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
)


def is_memory_sqlite(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")


def engine_options(config: DatabaseConfig) -> Dict[str, Any]:
    """
    create_engine keyword arguments for a database URL.

    An in-memory SQLite database lives exactly as long as its connection,
    so it is pinned to one shared connection. File SQLite allows access
    from the admin server thread; server databases get a pre-pinged pool.
    """
    options: Dict[str, Any] = {"echo": config.echo}
    backend = make_url(config.url).get_backend_name()

    if is_memory_sqlite(config.url):
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    elif backend == "sqlite":
        options["connect_args"] = {"check_same_thread": False, "timeout": config.timeout}
    else:
        options.update(
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.timeout,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return options


class DatabaseConnection:
    """
    Owns the engine and session factory of one database URL.

    Sessions are synchronous and short-lived; callers open one per store
    operation.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine: Optional[Engine] = None
        self.session_factory: Optional[sessionmaker] = None

    @property
    def is_initialized(self) -> bool:
        return self.engine is not None

    def initialize(self) -> None:
        if self.engine is not None:
            return

        engine = create_engine(self.config.url, **engine_options(self.config))
        if engine.url.get_backend_name() == "sqlite" and not is_memory_sqlite(self.config.url):
            event.listen(engine, "connect", _apply_sqlite_pragmas)

        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        logger.info(f"Connected to {engine.url.render_as_string(hide_password=True)}")

    def _require_engine(self) -> Engine:
        if self.engine is None:
            raise RuntimeError("Database not initialized")
        return self.engine

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self._require_engine())
        logger.info(f"Ensured tables: {', '.join(sorted(Base.metadata.tables))}")

    def drop_tables(self) -> None:
        logger.warning("Dropping indexer tables")
        Base.metadata.drop_all(bind=self._require_engine())

    def get_session(self) -> Session:
        if self.session_factory is None:
            raise RuntimeError("Database not initialized")
        return self.session_factory()

    def table_counts(self) -> Dict[str, int]:
        """Row count per indexer table; tables not created yet are skipped."""
        counts = {}
        with self._require_engine().connect() as conn:
            existing = set(inspect(conn).get_table_names())
            for name, table in sorted(Base.metadata.tables.items()):
                if name in existing:
                    counts[name] = conn.execute(select(func.count()).select_from(table)).scalar_one()
        return counts

    def health_check(self) -> bool:
        """True when a trivial query succeeds."""
        try:
            with self._require_engine().connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Database engine disposed")
        self.engine = None
        self.session_factory = None


def _apply_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    # WAL lets the admin API read while worker slots write
    cursor = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()
