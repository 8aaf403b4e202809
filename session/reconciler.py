"""
Load-time cache reconciliation.

Decides whether the session cached on this node is still current, must be
rehydrated from Redis, has migrated from another node, or no longer
exists. The store is consulted at most once per session per request;
later loads within the same request reuse the cached record.
"""

import logging
from typing import Callable, Optional

from session.lifecycle import RequestContext
from session.record import SessionRecord
from session.redis_store import FetchOutcome, RedisSessionStore
from session.serializers import Serializer

logger = logging.getLogger(__name__)


class CacheReconciler:
    """
    Reconciles cached session records with the shared store.

    Attributes:
        store: Store adapter used to fetch stored records
        serializer: Decodes the stored attribute blob
        node_name: Identity of this node
        clock: Callable returning the current time in epoch milliseconds
    """

    def __init__(
        self,
        store: RedisSessionStore,
        serializer: Serializer,
        node_name: str,
        clock: Callable[[], int],
    ):
        self.store = store
        self.serializer = serializer
        self.node_name = node_name
        self.clock = clock

    def reconcile(
        self,
        session_id: str,
        cached: Optional[SessionRecord],
        context: Optional[RequestContext] = None,
    ) -> Optional[SessionRecord]:
        """
        Produce the current record for a session id.

        Args:
            session_id: The session identifier.
            cached: The record cached on this node, if any.
            context: The current request; gates the store round trip to
                once per session per request.

        Returns:
            `cached` when it is current, a freshly hydrated record when the
            store holds a newer copy, or None when the session is gone or
            expired. A cached record found absent from the store is
            invalidated.

        Raises:
            AppException: SESSION_STORE_UNAVAILABLE if the store cannot be
                read, SERIALIZATION_ERROR if the stored copy is unreadable.
        """
        first = context is None or context.first_access(session_id)
        if cached is not None and not first:
            return cached

        if cached is None:
            logger.debug("No session in cache, loading from store", extra={
                "extra_data": {"session_id": session_id}
            })
            result = self.store.fetch(session_id)
        else:
            logger.debug("Session in cache, checking store for changes", extra={
                "extra_data": {"session_id": session_id}
            })
            result = self.store.fetch(session_id, cached.last_saved)

        if result.outcome is FetchOutcome.UNCHANGED:
            logger.debug("No change in store for session", extra={
                "extra_data": {"session_id": session_id}
            })
            return cached

        if result.outcome is FetchOutcome.ABSENT:
            logger.debug("No session in store", extra={
                "extra_data": {"session_id": session_id}
            })
            if cached is not None:
                cached.invalidate()
            return None

        loaded = self._hydrate(result.fields)

        if cached is None or loaded.last_node != self.node_name:
            if loaded.is_expired(self.clock()):
                logger.debug("Loaded session has expired", extra={
                    "extra_data": {"session_id": session_id, "last_node": loaded.last_node}
                })
                return None
            if loaded.last_node != self.node_name:
                logger.info("Session migrated to this node", extra={
                    "extra_data": {
                        "session_id": session_id,
                        "from_node": loaded.last_node,
                        "to_node": self.node_name,
                    }
                })
            loaded.change_owner(self.node_name)

        return loaded

    def _hydrate(self, fields: dict[str, Optional[str]]) -> SessionRecord:
        attributes = self.serializer.deserialize(fields.get("attributes") or "")
        record = SessionRecord.from_stored(fields, attributes)
        record.notify_did_activate()
        return record
