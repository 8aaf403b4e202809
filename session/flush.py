"""
Request-completion flush scheduling.

At the end of every request the pending changes of the session are
either written to Redis or left pending. Changes that only move access
times forward are debounced: they are written once the session was last
saved at least `save_interval_sec` seconds before its latest access. Any
other change is written immediately.

A failed write at request completion is logged and dropped. The taken
change set is not restored and nothing is retried; the next change to
the session produces the next write.
"""

import logging

from session.record import TIMING_FIELDS, SessionRecord
from session.redis_store import RedisSessionStore
from session.serializers import Serializer
from telemetry.service import record_metric

logger = logging.getLogger(__name__)

# Default debounce window for access-time-only saves
DEFAULT_SAVE_INTERVAL_SEC = 20


def needs_flush(pending: frozenset, accessed: int, last_saved: int, save_interval_sec: int) -> bool:
    """
    Decide whether pending changes warrant a write.

    Args:
        pending: Names of the stored fields with pending changes.
        accessed: The session's latest access time (ms).
        last_saved: When the session was last saved (ms).
        save_interval_sec: Debounce window for timing-only changes.

    Returns:
        True if the change set is non-empty and either holds a field other
        than the timing fields or the debounce window has elapsed.
    """
    if not pending:
        return False
    if pending - TIMING_FIELDS:
        return True
    return accessed - last_saved >= save_interval_sec * 1000


class FlushScheduler:
    """
    Writes session change sets back to the store.

    Attributes:
        store: Store adapter performing the atomic write
        serializer: Encodes the attribute mapping
        save_interval_sec: Debounce window for timing-only changes
    """

    def __init__(
        self,
        store: RedisSessionStore,
        serializer: Serializer,
        save_interval_sec: int = DEFAULT_SAVE_INTERVAL_SEC,
    ):
        self.store = store
        self.serializer = serializer
        self.save_interval_sec = save_interval_sec

    def _due(self, record: SessionRecord, pending: frozenset) -> bool:
        return needs_flush(pending, record.accessed, record.last_saved, self.save_interval_sec)

    def complete(self, record: SessionRecord) -> bool:
        """
        Flush a session at request completion if its changes warrant it.

        Never raises: store and serialization failures are logged and the
        pending changes are dropped.

        Args:
            record: The session used by the completing request.

        Returns:
            True if a write was issued and succeeded.
        """
        if not record.is_valid:
            return False

        changes = record.take_changes(self._due)
        if changes is None:
            return False

        try:
            self._write(record, changes)
        except Exception:
            logger.warning(
                "Problem persisting changed session data, changes dropped",
                exc_info=True,
                extra={"extra_data": {
                    "session_id": record.id,
                    "dropped_fields": sorted(changes),
                }}
            )
            record_metric("session.flush", 0, {"result": "failed"})
            return False

        record_metric("session.flush", 1, {"result": "saved"})
        return True

    def persist(self, record: SessionRecord) -> bool:
        """
        Write all pending changes now, without the debounce decision.

        Returns:
            True if a write was issued, False if nothing was pending.

        Raises:
            AppException: If serialization or the store write fails. The
                taken changes are dropped in that case too.
        """
        changes = record.take_changes()
        if changes is None:
            return False
        self._write(record, changes)
        return True

    def _write(self, record: SessionRecord, changes: dict[str, str]) -> None:
        # timing fields travel together so later debounce math stays sound
        if changes.keys() & TIMING_FIELDS:
            changes.update(record.stored_values(TIMING_FIELDS))

        record.notify_will_passivate()
        if "attributes" in changes:
            changes["attributes"] = self.serializer.serialize(record.attributes)

        logger.debug("Storing session", extra={
            "extra_data": {"session_id": record.id, "fields": sorted(changes)}
        })
        self.store.persist(record, changes)
        record.notify_did_activate()
