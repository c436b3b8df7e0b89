"""SQL-backed durable state store."""

import asyncio
import fnmatch
import json
import logging
from typing import Any, Callable, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from gatekeeper.clock import Clock, default_clock
from gatekeeper.db.manager import DatabaseManager
from gatekeeper.db.models import StateRecord
from gatekeeper.exceptions import StateStoreUnavailable
from gatekeeper.store.base import StateStore

logger = logging.getLogger(__name__)

R = TypeVar("R")


class DurableStore(StateStore):
    """
    State store persisted through SQLAlchemy.

    Used as the recovery tier behind a cache, or on its own when only a
    shared database is available. CAS is a conditional UPDATE, so atomicity
    holds for every process using the same database.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        clock: Clock | None = None,
        cas_max_retries: int = 50,
    ) -> None:
        """
        Initialize durable store.

        Args:
            db_manager: Database manager owning the engine
            clock: Time source used for expiry
            cas_max_retries: Attempts for atomic updates under contention
        """
        self._db = db_manager
        self._clock = clock or default_clock
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self.cas_max_retries = cas_max_retries

    @property
    def name(self) -> str:
        return "sql"

    @property
    def is_connected(self) -> bool:
        return self._db.health_check()

    def _serialize(self, value: Any) -> str:
        return json.dumps(value, sort_keys=True, separators=(",", ":"))

    def _expires_at(self, ttl_seconds: int | None) -> float | None:
        if not ttl_seconds or ttl_seconds <= 0:
            return None
        return self._clock.now() + ttl_seconds

    @staticmethod
    def _namespace(key: str) -> str:
        return key.split(":", 1)[0]

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if not self._initialized:
                await asyncio.to_thread(self._db.init_db)
                self._initialized = True

    async def _run(self, operation: str, fn: Callable[[], R]) -> R:
        """Run a blocking database call off the event loop."""
        try:
            await self._ensure_initialized()
            return await asyncio.to_thread(fn)
        except SQLAlchemyError as e:
            logger.error(f"Durable store {operation} failed: {e}")
            raise StateStoreUnavailable(f"Durable store {operation} failed: {e}") from e

    def _is_live(self, record: StateRecord, now: float) -> bool:
        return record.expires_at is None or record.expires_at > now

    async def get(self, key: str) -> Any | None:
        def _get() -> Any | None:
            with self._db.get_session() as session:
                record = session.scalars(select(StateRecord).where(StateRecord.key == key)).first()
                if record is None or not self._is_live(record, self._clock.now()):
                    return None
                return json.loads(record.value_json)

        return await self._run("get", _get)

    async def get_versioned(self, key: str) -> tuple[Any, int] | None:
        """Get a live value together with its write version."""

        def _get() -> tuple[Any, int] | None:
            with self._db.get_session() as session:
                record = session.scalars(select(StateRecord).where(StateRecord.key == key)).first()
                if record is None or not self._is_live(record, self._clock.now()):
                    return None
                return json.loads(record.value_json), record.version

        return await self._run("get", _get)

    async def set_if_newer(
        self,
        key: str,
        value: Any,
        version: int,
        ttl_seconds: int | None = None,
    ) -> bool:
        """
        Store `value` unless a live record with an equal or higher version exists.

        Returns:
            True if written, False if a newer version was already stored
        """
        serialized = self._serialize(value)
        expires_at = self._expires_at(ttl_seconds)
        now = self._clock.now()

        def _replace_older() -> bool:
            with self._db.get_session() as session:
                result = session.execute(
                    update(StateRecord)
                    .where(
                        StateRecord.key == key,
                        (StateRecord.version < version)
                        | (StateRecord.expires_at.is_not(None) & (StateRecord.expires_at <= now)),
                    )
                    .values(value_json=serialized, expires_at=expires_at, version=version)
                )
                return result.rowcount == 1

        def _insert() -> bool:
            try:
                with self._db.get_session() as session:
                    exists = session.scalars(select(StateRecord.id).where(StateRecord.key == key)).first()
                    if exists is not None:
                        return False
                    session.add(
                        StateRecord(
                            key=key,
                            namespace=self._namespace(key),
                            value_json=serialized,
                            expires_at=expires_at,
                            version=version,
                        )
                    )
                return True
            except IntegrityError:
                return False

        # An insert lost to a concurrent writer is retried as a conditional update
        for _ in range(2):
            if await self._run("versioned set", _replace_older):
                return True
            if await self._run("versioned insert", _insert):
                return True
        return False

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        serialized = self._serialize(value)
        expires_at = self._expires_at(ttl_seconds)

        def _set() -> bool:
            with self._db.get_session() as session:
                record = session.scalars(select(StateRecord).where(StateRecord.key == key)).first()
                if record is None:
                    session.add(
                        StateRecord(
                            key=key,
                            namespace=self._namespace(key),
                            value_json=serialized,
                            expires_at=expires_at,
                        )
                    )
                else:
                    record.value_json = serialized
                    record.expires_at = expires_at
            return True

        return await self._run("set", _set)

    async def delete(self, key: str) -> bool:
        def _delete() -> bool:
            with self._db.get_session() as session:
                result = session.execute(delete(StateRecord).where(StateRecord.key == key))
                return result.rowcount > 0

        return await self._run("delete", _delete)

    async def compare_and_swap(
        self,
        key: str,
        expected: Any | None,
        new: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        serialized = self._serialize(new)
        expires_at = self._expires_at(ttl_seconds)
        now = self._clock.now()

        def _insert_if_absent() -> bool:
            try:
                with self._db.get_session() as session:
                    record = session.scalars(select(StateRecord).where(StateRecord.key == key)).first()
                    if record is not None:
                        if self._is_live(record, now):
                            return False
                        session.delete(record)
                        session.flush()
                    session.add(
                        StateRecord(
                            key=key,
                            namespace=self._namespace(key),
                            value_json=serialized,
                            expires_at=expires_at,
                        )
                    )
                return True
            except IntegrityError:
                # A concurrent writer inserted the key first
                return False

        def _swap() -> bool:
            with self._db.get_session() as session:
                result = session.execute(
                    update(StateRecord)
                    .where(
                        StateRecord.key == key,
                        StateRecord.value_json == self._serialize(expected),
                        (StateRecord.expires_at.is_(None)) | (StateRecord.expires_at > now),
                    )
                    .values(value_json=serialized, expires_at=expires_at)
                )
                return result.rowcount == 1

        if expected is None:
            return await self._run("insert", _insert_if_absent)
        return await self._run("cas", _swap)

    async def clear(self, pattern: str | None = None) -> int:
        def _clear() -> int:
            with self._db.get_session() as session:
                if pattern is None:
                    return session.execute(delete(StateRecord)).rowcount
                keys = [
                    k for k in session.scalars(select(StateRecord.key))
                    if fnmatch.fnmatch(k, pattern)
                ]
                if keys:
                    session.execute(delete(StateRecord).where(StateRecord.key.in_(keys)))
                return len(keys)

        return await self._run("clear", _clear)

    async def purge_expired(self) -> int:
        """Delete rows whose TTL has passed."""
        now = self._clock.now()

        def _purge() -> int:
            with self._db.get_session() as session:
                result = session.execute(
                    delete(StateRecord).where(
                        StateRecord.expires_at.is_not(None),
                        StateRecord.expires_at <= now,
                    )
                )
                return result.rowcount

        purged = await self._run("purge", _purge)
        if purged:
            logger.info(f"Purged {purged} expired state records")
        return purged

    async def close(self) -> None:
        self._db.close()
        self._initialized = False

    async def health_check(self) -> dict[str, Any]:
        healthy = await asyncio.to_thread(self._db.health_check)
        return {
            "backend": self.name,
            "connected": healthy,
        }
