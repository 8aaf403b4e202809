"""
Session lifecycle interface used by the hosting server.

The host drives sessions through four operations: create a session for a
new client, load the session named by a request, store it explicitly, and
delete it on invalidation. The session manager implements this interface
instead of inheriting lifecycle behaviour from the host.

RequestContext carries the per-request state the manager needs. It is
created by the host for every request and passed explicitly, so the
"first access in this request" decision never depends on which thread is
serving the request.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from session.record import SessionRecord


@dataclass
class RequestContext:
    """
    State scoped to one request.

    Attributes:
        request_id: Correlation id of the request
        loaded: Session ids already reconciled against the store during
            this request
    """
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    loaded: set[str] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def first_access(self, session_id: str) -> bool:
        """Return True exactly once per session id for this request."""
        with self._lock:
            if session_id in self.loaded:
                return False
            self.loaded.add(session_id)
            return True


class SessionLifecycle(ABC):
    """
    Capability interface invoked by the host's request lifecycle.

    All methods are blocking and are called on the request's worker
    thread.
    """

    @abstractmethod
    def new_session(self, session_id: str) -> SessionRecord:
        """
        Create a session for a client that has none.

        Args:
            session_id: Identifier generated by the host.

        Returns:
            The new record, owned by this node and pending a full write.
        """

    @abstractmethod
    def load(self, session_id: str, context: Optional[RequestContext] = None) -> Optional[SessionRecord]:
        """
        Resolve the session named by a request.

        Args:
            session_id: Identifier taken from the request.
            context: The current request's context. Without one every call
                checks the store.

        Returns:
            The current record, or None if the session does not exist or
            has expired.

        Raises:
            AppException: SESSION_STORE_UNAVAILABLE if the store cannot
                be read.
        """

    @abstractmethod
    def store(self, record: SessionRecord) -> None:
        """
        Persist pending changes of a session now, bypassing debouncing.

        Raises:
            AppException: SESSION_STORE_UNAVAILABLE if the write fails.
        """

    @abstractmethod
    def delete(self, record: SessionRecord) -> None:
        """
        Remove a session from the store and from this node.

        Raises:
            AppException: SESSION_STORE_UNAVAILABLE if the delete fails.
        """
