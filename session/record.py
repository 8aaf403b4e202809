"""
In-memory session record.

A SessionRecord holds the materialized state of one session on this node
together with a change set: the stored fields modified since the last
persistence attempt, keyed by their Redis hash field name. Every mutator
records into the change set under the record's lock, and the flush path
swaps the whole change set out in one step so it always works on a
consistent snapshot.

All timestamps are epoch milliseconds. Sentinels follow the stored
layout: expiry_time == 0 means the session never expires, max_idle < 0
means no idle limit, cookie_set == 0 means no cookie has been issued.
"""

import threading
from typing import Any, Callable, Iterable, Optional

from errors.exceptions import serialization_error, session_invalidated

NEVER = 0

SESSION_FIELDS = (
    "id",
    "created",
    "accessed",
    "lastNode",
    "expiryTime",
    "lastSaved",
    "lastAccessed",
    "maxIdle",
    "cookieSet",
    "attributes",
)

# Fields touched by a plain access; saving them alone is debounced.
TIMING_FIELDS = frozenset({"accessed", "lastAccessed", "expiryTime"})


def compute_expiry(accessed: int, max_idle: int) -> int:
    """Absolute expiry for a session last accessed at `accessed`."""
    return accessed + max_idle if max_idle >= 0 else NEVER


class SessionRecord:
    """
    State of a single session as seen by this node.

    Records are built either with create() for a brand new session, whose
    change set is seeded with every stored field, or with from_stored()
    when hydrating from Redis, whose change set starts empty.
    """

    def __init__(
        self,
        session_id: str,
        created: int,
        accessed: int,
        last_accessed: int,
        last_node: str,
        max_idle: int,
        cookie_set: int = 0,
        last_saved: int = 0,
        expiry_time: Optional[int] = None,
        attributes: Optional[dict[str, Any]] = None,
    ):
        self._id = session_id
        self._created = created
        self.accessed = accessed
        self.last_accessed = last_accessed
        self.last_node = last_node
        self.max_idle = max_idle
        self.cookie_set = cookie_set
        self.last_saved = last_saved
        self.expiry_time = (
            compute_expiry(accessed, max_idle) if expiry_time is None else expiry_time
        )
        self._attributes: dict[str, Any] = dict(attributes or {})
        self._changes: dict[str, str] = {}
        self._valid = True
        self._lock = threading.RLock()

    @classmethod
    def create(cls, session_id: str, now: int, node: str, max_idle: int) -> "SessionRecord":
        """Create a new session owned by `node`, pending a full write."""
        record = cls(
            session_id,
            created=now,
            accessed=now,
            last_accessed=now,
            last_node=node,
            max_idle=max_idle,
        )
        record._changes = {name: record._stored_value(name) for name in SESSION_FIELDS}
        return record

    @classmethod
    def from_stored(cls, fields: dict[str, Optional[str]], attributes: dict[str, Any]) -> "SessionRecord":
        """
        Hydrate a record from the ten stored hash fields.

        Raises:
            AppException: SERIALIZATION_ERROR if a numeric field is missing
                or malformed.
        """
        try:
            return cls(
                fields["id"],
                created=int(fields["created"]),
                accessed=int(fields["accessed"]),
                last_accessed=int(fields["lastAccessed"]),
                last_node=fields["lastNode"] or "",
                max_idle=int(fields["maxIdle"]),
                cookie_set=int(fields["cookieSet"]),
                last_saved=int(fields["lastSaved"]),
                expiry_time=int(fields["expiryTime"]),
                attributes=attributes,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise serialization_error(
                "Stored session record is malformed",
                details={"session_id": fields.get("id"), "error": str(e)},
            ) from e

    @property
    def id(self) -> str:
        return self._id

    @property
    def created(self) -> int:
        return self._created

    @property
    def is_valid(self) -> bool:
        return self._valid

    def is_expired(self, now: int) -> bool:
        return self.expiry_time != NEVER and self.expiry_time <= now

    def _check_valid(self) -> None:
        if not self._valid:
            raise session_invalidated(details={"session_id": self._id})

    def _stored_value(self, name: str) -> str:
        # attributes are serialized at flush time, never eagerly
        values = {
            "id": self._id,
            "created": self._created,
            "accessed": self.accessed,
            "lastNode": self.last_node,
            "expiryTime": self.expiry_time,
            "lastSaved": self.last_saved,
            "lastAccessed": self.last_accessed,
            "maxIdle": self.max_idle,
            "cookieSet": self.cookie_set,
            "attributes": "",
        }
        return str(values[name])

    def _mark(self, *names: str) -> None:
        for name in names:
            self._changes[name] = self._stored_value(name)

    # Mutators

    def access(self, time: int) -> None:
        """Record an access at `time` and push the expiry forward."""
        with self._lock:
            self._check_valid()
            time = max(time, self.accessed)
            self.last_accessed = self.accessed
            self.accessed = time
            self.expiry_time = compute_expiry(time, self.max_idle)
            self._mark("accessed", "lastAccessed", "expiryTime")

    def set_attribute(self, name: str, value: Any) -> None:
        """Bind `value` under `name`; None unbinds it."""
        with self._lock:
            self._check_valid()
            if value is None:
                self._attributes.pop(name, None)
            else:
                self._attributes[name] = value
            self._mark("attributes")

    def remove_attribute(self, name: str) -> None:
        with self._lock:
            self._check_valid()
            self._attributes.pop(name, None)
            self._mark("attributes")

    def set_max_inactive_interval(self, seconds: int) -> None:
        """Change the idle limit; a negative value disables expiry."""
        with self._lock:
            self._check_valid()
            self.max_idle = seconds * 1000 if seconds >= 0 else -1
            self.expiry_time = compute_expiry(self.accessed, self.max_idle)
            self._mark("maxIdle", "expiryTime")

    def mark_cookie_set(self) -> None:
        """Note that the session cookie was (re)issued on this access."""
        with self._lock:
            self._check_valid()
            self.cookie_set = self.accessed
            self._mark("cookieSet")

    def change_owner(self, node: str) -> None:
        with self._lock:
            self.last_node = node
            self._mark("lastNode")

    def invalidate(self) -> None:
        with self._lock:
            self._valid = False
            self._changes = {}

    # Readers

    def get_attribute(self, name: str, default: Any = None) -> Any:
        with self._lock:
            self._check_valid()
            return self._attributes.get(name, default)

    def attribute_names(self) -> list[str]:
        with self._lock:
            self._check_valid()
            return list(self._attributes)

    @property
    def attributes(self) -> dict[str, Any]:
        """Snapshot copy of the attribute mapping."""
        with self._lock:
            return dict(self._attributes)

    # Change set

    def pending_fields(self) -> frozenset:
        with self._lock:
            return frozenset(self._changes)

    def has_changes(self) -> bool:
        with self._lock:
            return bool(self._changes)

    def take_changes(
        self, condition: Optional[Callable[["SessionRecord", frozenset], bool]] = None
    ) -> Optional[dict[str, str]]:
        """
        Swap the change set out and return it.

        Returns None, leaving the change set untouched, when it is empty
        or when `condition(record, pending_fields)` is false. The check
        and the swap happen under the same lock.
        """
        with self._lock:
            if not self._changes:
                return None
            if condition is not None and not condition(self, frozenset(self._changes)):
                return None
            changes, self._changes = self._changes, {}
            return changes

    def stored_values(self, names: Iterable[str]) -> dict[str, str]:
        """Current stored representation of the given fields."""
        with self._lock:
            return {name: self._stored_value(name) for name in names}

    # Activation hooks

    def notify_will_passivate(self) -> None:
        self._notify("will_passivate")

    def notify_did_activate(self) -> None:
        self._notify("did_activate")

    def _notify(self, hook: str) -> None:
        for value in self.attributes.values():
            listener = getattr(value, hook, None)
            if callable(listener):
                listener(self)

    def __repr__(self) -> str:
        return (
            f"SessionRecord(id={self._id!r}, last_node={self.last_node!r}, "
            f"accessed={self.accessed}, last_saved={self.last_saved}, "
            f"valid={self._valid})"
        )
