"""Engine and session handling for the durable state tier."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gatekeeper.db.base import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Owns the engine behind a DurableStore.

    Sessions are opened from worker threads, one per store call. File-backed
    SQLite databases run in WAL mode so several gatekeeper processes can
    share one state file.
    """

    def __init__(
        self,
        database_url: str = "sqlite:///data/gatekeeper.db",
        echo: bool = False,
    ) -> None:
        self._database_url = database_url
        self._echo = echo
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None

    @property
    def engine(self) -> Engine:
        """Engine for the state database, created on first use."""
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    def _create_engine(self) -> Engine:
        is_sqlite = self._database_url.startswith("sqlite")
        in_memory = is_sqlite and self._database_url in ("sqlite://", "sqlite:///:memory:")

        if self._database_url.startswith("sqlite:///") and not in_memory:
            Path(self._database_url.replace("sqlite:///", "")).parent.mkdir(parents=True, exist_ok=True)

        kwargs: dict = {"echo": self._echo, "pool_pre_ping": True}
        if is_sqlite:
            # Store calls run in worker threads
            kwargs["connect_args"] = {"check_same_thread": False}
        if in_memory:
            kwargs["poolclass"] = StaticPool

        engine = create_engine(self._database_url, **kwargs)
        if is_sqlite and not in_memory:
            self._enable_wal(engine)
        return engine

    def _enable_wal(self, engine: Engine) -> None:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # type: ignore
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            # Wait for competing writers instead of failing immediately
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

        logger.info(f"State database {self._database_url} using WAL journal")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Open a session that commits on success and rolls back on error.

        Usage:
            with db_manager.get_session() as session:
                session.scalars(select(StateRecord).where(StateRecord.key == key)).first()
        """
        if self._sessions is None:
            self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create the state_records table if missing."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("State tables created/verified")

    def health_check(self) -> bool:
        """True if the state database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"State database health check failed: {e}")
            return False

    def close(self) -> None:
        """Dispose of the engine; the next call reconnects."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.info("State database connection closed")
