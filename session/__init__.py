"""
Session replication core.

Keeps in-process session records coherent with a shared Redis store so
sessions survive restarts and can move between cooperating nodes.
"""

from session.record import SessionRecord, SESSION_FIELDS, TIMING_FIELDS, NEVER
from session.redis_store import RedisSessionStore, FetchOutcome, FetchResult
from session.serializers import Serializer, JsonSerializer, PickleSerializer, create_serializer
from session.lifecycle import SessionLifecycle, RequestContext
from session.reconciler import CacheReconciler
from session.flush import FlushScheduler, needs_flush
from session.manager import RedisSessionManager

__all__ = [
    "SessionRecord",
    "SESSION_FIELDS",
    "TIMING_FIELDS",
    "NEVER",
    "RedisSessionStore",
    "FetchOutcome",
    "FetchResult",
    "Serializer",
    "JsonSerializer",
    "PickleSerializer",
    "create_serializer",
    "SessionLifecycle",
    "RequestContext",
    "CacheReconciler",
    "FlushScheduler",
    "needs_flush",
    "RedisSessionManager",
]
