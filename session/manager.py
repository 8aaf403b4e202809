"""
Redis session manager.

RedisSessionManager implements the SessionLifecycle interface for one
node: it keeps the sessions this node has seen in memory, reconciles them
with Redis when requests load them, and flushes their changes when
requests complete.

Same-session requests on one node may run concurrently and share a
record. The cache dictionary is guarded by the manager's lock and each
record guards its own state; no lock is held across a store round trip.
"""

import logging
import threading
from typing import Callable, Optional

from config.settings import Settings, validate_startup
from session.flush import FlushScheduler
from session.lifecycle import RequestContext, SessionLifecycle
from session.reconciler import CacheReconciler
from session.record import SessionRecord
from session.redis_store import RedisSessionStore, current_millis
from session.serializers import PickleSerializer, Serializer, create_serializer
from telemetry.service import record_metric

logger = logging.getLogger(__name__)


class RedisSessionManager(SessionLifecycle):
    """
    Session manager replicating sessions through Redis.

    Example:
        manager = RedisSessionManager.from_settings(get_settings())
        manager.start()

        context = RequestContext()
        session = manager.load(session_id, context) or manager.new_session(new_id)
        session.access(manager.now())
        ...
        manager.complete_request(session)

    Attributes:
        store: Store adapter for the shared Redis hashes
        serializer: Attribute serializer, started and stopped with the manager
        node_name: Identity recorded as lastNode on sessions this node owns
        max_inactive_interval: Idle seconds for new sessions; negative never expires
        clock: Callable returning the current time in epoch milliseconds
    """

    def __init__(
        self,
        store: RedisSessionStore,
        node_name: str,
        serializer: Optional[Serializer] = None,
        save_interval_sec: int = 20,
        max_inactive_interval: int = 1800,
        clock: Callable[[], int] = current_millis,
    ):
        self.store = store
        self.node_name = node_name
        self.serializer = serializer if serializer is not None else PickleSerializer()
        self.max_inactive_interval = max_inactive_interval
        self.clock = clock
        self.reconciler = CacheReconciler(store, self.serializer, node_name, clock)
        self.flusher = FlushScheduler(store, self.serializer, save_interval_sec)
        self._sessions: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self._running = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        clock: Callable[[], int] = current_millis,
    ) -> "RedisSessionManager":
        """
        Build a manager with an eagerly connected store.

        Raises:
            ConfigurationError: If the store connection cannot be resolved.
        """
        validate_startup(settings)
        store = RedisSessionStore.connect(settings, clock=clock)
        return cls(
            store,
            node_name=settings.worker_name,
            serializer=create_serializer(settings.session_serializer),
            save_interval_sec=settings.save_interval_sec,
            max_inactive_interval=settings.max_inactive_interval,
            clock=clock,
        )

    @property
    def save_interval_sec(self) -> int:
        return self.flusher.save_interval_sec

    @save_interval_sec.setter
    def save_interval_sec(self, seconds: int) -> None:
        self.flusher.save_interval_sec = seconds

    @property
    def running(self) -> bool:
        return self._running

    def now(self) -> int:
        return self.clock()

    def start(self) -> None:
        """Start the manager and its serializer."""
        self.serializer.start()
        self._running = True
        logger.info("Session manager started", extra={
            "extra_data": {
                "node": self.node_name,
                "save_interval_sec": self.save_interval_sec,
                "serializer": type(self.serializer).__name__,
            }
        })

    def stop(self) -> None:
        """Stop the manager, drop cached sessions and stop the serializer."""
        self._running = False
        with self._lock:
            self._sessions.clear()
        self.serializer.stop()
        logger.info("Session manager stopped", extra={
            "extra_data": {"node": self.node_name}
        })

    # SessionLifecycle

    def new_session(self, session_id: str) -> SessionRecord:
        max_idle = self.max_inactive_interval * 1000 if self.max_inactive_interval >= 0 else -1
        record = SessionRecord.create(session_id, self.clock(), self.node_name, max_idle)
        with self._lock:
            self._sessions[session_id] = record
        logger.debug("Created session", extra={"extra_data": {"session_id": session_id}})
        return record

    def load(self, session_id: str, context: Optional[RequestContext] = None) -> Optional[SessionRecord]:
        with self._lock:
            cached = self._sessions.get(session_id)

        loaded = self.reconciler.reconcile(session_id, cached, context)

        with self._lock:
            if loaded is None:
                if self._sessions.get(session_id) is cached:
                    self._sessions.pop(session_id, None)
            elif loaded is not cached:
                self._sessions[session_id] = loaded

        if loaded is None:
            record_metric("session.load", 0, {"result": "absent"})
        elif loaded is not cached:
            record_metric("session.load", 1, {"result": "hydrated"})
        return loaded

    def store(self, record: SessionRecord) -> None:
        self.flusher.persist(record)

    def delete(self, record: SessionRecord) -> None:
        logger.debug("Deleting session from store", extra={
            "extra_data": {"session_id": record.id}
        })
        with self._lock:
            if self._sessions.get(record.id) is record:
                self._sessions.pop(record.id, None)
        record.invalidate()
        self.store.delete(record.id)

    # Request lifecycle helpers

    def complete_request(self, record: SessionRecord) -> bool:
        """Run the flush decision for a completing request. Never raises."""
        return self.flusher.complete(record)

    def invalidate(self, record: SessionRecord) -> None:
        """Invalidate a session; alias of delete() for host code."""
        self.delete(record)

    def get_cached(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.get(session_id)

    def scavenge(self) -> int:
        """
        Drop expired sessions from this node's cache.

        The shared copies expire in Redis through their key TTL, so
        nothing is written to the store.

        Returns:
            Number of sessions dropped.
        """
        now = self.clock()
        with self._lock:
            expired = [r for r in self._sessions.values() if r.is_expired(now)]
            for record in expired:
                del self._sessions[record.id]
        for record in expired:
            record.invalidate()
        if expired:
            logger.debug("Scavenged expired sessions", extra={
                "extra_data": {"count": len(expired)}
            })
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
