"""
Redis-backed store adapter for session records.

Each session is stored as a Redis hash under `<prefix><session id>` with
exactly the ten fields listed in SESSION_FIELDS. Writes update the hash
and the key expiry in a single MULTI/EXEC transaction, so the stored
record and its TTL never disagree.

All calls are blocking and run on the calling request thread. The
underlying redis-py client owns connection pooling; when the pool is
exhausted the caller waits up to the pool timeout.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import redis

from config.settings import ConfigurationError, Settings
from errors.exceptions import serialization_error, session_store_unavailable
from session.record import NEVER, SESSION_FIELDS, SessionRecord

logger = logging.getLogger(__name__)


# Default namespace for session keys
DEFAULT_KEY_PREFIX = "session:"


def current_millis() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


class FetchOutcome(Enum):
    """Result kinds of RedisSessionStore.fetch()."""
    UNCHANGED = "unchanged"
    ABSENT = "absent"
    CHANGED = "changed"


@dataclass
class FetchResult:
    """
    Outcome of a fetch.

    Attributes:
        outcome: Whether the stored record is unchanged, absent or changed
        fields: The ten stored fields when outcome is CHANGED, else empty
    """
    outcome: FetchOutcome
    fields: dict[str, Optional[str]] = field(default_factory=dict)


UNCHANGED = FetchResult(FetchOutcome.UNCHANGED)
ABSENT = FetchResult(FetchOutcome.ABSENT)


def _parse_stamp(session_id: str, stored: str) -> int:
    try:
        return int(stored)
    except ValueError as e:
        raise serialization_error(
            "Stored session record is malformed",
            details={"session_id": session_id, "field": "lastSaved", "error": str(e)},
        ) from e


class RedisSessionStore:
    """
    Redis store adapter for session hashes.

    Attributes:
        client: A synchronous redis-py client created with
            decode_responses=True
        key_prefix: Namespace prefix for session keys
        clock: Callable returning the current time in epoch milliseconds
    """

    def __init__(
        self,
        client: Any,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        clock: Callable[[], int] = current_millis,
    ):
        self.client = client
        self.key_prefix = key_prefix
        self.clock = clock

    @classmethod
    def connect(cls, settings: Settings, clock: Callable[[], int] = current_millis) -> "RedisSessionStore":
        """
        Build a pooled client from settings and verify it eagerly.

        The pool blocks callers for at most settings.redis_pool_timeout
        seconds when all connections are in use.

        Raises:
            ConfigurationError: If no URL is configured or Redis cannot be
                reached with it.
        """
        if not settings.redis_url:
            raise ConfigurationError(
                "Session store connection cannot be resolved",
                missing_fields=["redis_url"]
            )

        try:
            pool = redis.BlockingConnectionPool.from_url(
                settings.redis_url,
                max_connections=settings.redis_max_connections,
                timeout=settings.redis_pool_timeout,
                decode_responses=True,
            )
            client = redis.Redis(connection_pool=pool)
            client.ping()
        except (redis.RedisError, ValueError) as e:
            raise ConfigurationError(
                "Unable to reach the session store",
                invalid_fields={"redis_url": str(e)}
            ) from e

        return cls(client, key_prefix=settings.session_key_prefix, clock=clock)

    def close(self) -> None:
        """Release pooled connections."""
        if self.client is not None:
            self.client.close()
            self.client = None

    def _get_key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    def _read_all(self, key: str) -> FetchResult:
        values = self.client.hmget(key, list(SESSION_FIELDS))
        fields = dict(zip(SESSION_FIELDS, values))
        if fields["id"] is None:
            return ABSENT
        return FetchResult(FetchOutcome.CHANGED, fields)

    def fetch(self, session_id: str, known_last_saved: Optional[int] = None) -> FetchResult:
        """
        Read the stored record for a session.

        Without `known_last_saved` the key is checked for existence and
        then read in full. With it, only `lastSaved` is read first and the
        full read happens only when the stored stamp differs.

        Args:
            session_id: The session identifier.
            known_last_saved: lastSaved stamp of the cached copy, if any.

        Returns:
            FetchResult with outcome UNCHANGED, ABSENT or CHANGED.

        Raises:
            AppException: SESSION_STORE_UNAVAILABLE on any Redis error,
                SERIALIZATION_ERROR if the stored lastSaved is not a number.
        """
        key = self._get_key(session_id)
        try:
            if known_last_saved is None:
                if not self.client.exists(key):
                    return ABSENT
                return self._read_all(key)

            stored = self.client.hget(key, "lastSaved")
            if stored is None:
                return ABSENT
            if _parse_stamp(session_id, stored) == known_last_saved:
                return UNCHANGED
            return self._read_all(key)
        except redis.RedisError as e:
            raise session_store_unavailable(
                "Unable to load session from Redis",
                details={"session_id": session_id, "operation": "fetch", "error": str(e)},
            ) from e

    def persist(self, record: SessionRecord, fields: dict[str, str]) -> int:
        """
        Write fields of a record and refresh its expiry atomically.

        `lastSaved` is stamped with the current time and always written.
        The key expires at record.expiry_time; records that never expire
        have any key expiry removed.

        Args:
            record: The session being saved; its last_saved is updated.
            fields: Stored field name to string value.

        Returns:
            The new lastSaved stamp.

        Raises:
            AppException: SESSION_STORE_UNAVAILABLE on any Redis error,
                SERIALIZATION_ERROR if the stored lastSaved is not a number.
        """
        key = self._get_key(record.id)
        last_saved = self.clock()
        to_store = dict(fields)
        to_store["lastSaved"] = str(last_saved)

        try:
            with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=to_store)
                if record.expiry_time == NEVER:
                    pipe.persist(key)
                else:
                    pipe.pexpireat(key, record.expiry_time)
                pipe.execute()
        except redis.RedisError as e:
            raise session_store_unavailable(
                "Unable to save session to Redis",
                details={"session_id": record.id, "operation": "persist", "error": str(e)},
            ) from e

        record.last_saved = last_saved
        return last_saved

    def delete(self, session_id: str) -> None:
        """
        Remove the stored record. Deleting a missing key is not an error.

        Raises:
            AppException: SESSION_STORE_UNAVAILABLE on any Redis error,
                SERIALIZATION_ERROR if the stored lastSaved is not a number.
        """
        try:
            self.client.delete(self._get_key(session_id))
        except redis.RedisError as e:
            raise session_store_unavailable(
                "Unable to delete session from Redis",
                details={"session_id": session_id, "operation": "delete", "error": str(e)},
            ) from e

    def health_check(self) -> bool:
        """
        Check connectivity with PING.

        Returns:
            True if Redis answered, False otherwise. Never raises.
        """
        if not self.client:
            return False

        try:
            return self.client.ping() is True
        except Exception:
            logger.debug("Session store ping failed", exc_info=True)
            return False
