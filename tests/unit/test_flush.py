"""
Unit tests for request-completion flushing.

Tests cover:
- The debounce decision for access-time-only changes
- Immediate writes for any other change
- Which fields are written and when attributes are serialized
- Failed writes being logged, dropped and never retried
"""

import logging
from unittest.mock import MagicMock

import pytest
from hypothesis import given, strategies as st

from errors.exceptions import session_store_unavailable
from session.flush import FlushScheduler, needs_flush
from session.record import SESSION_FIELDS, TIMING_FIELDS, SessionRecord
from session.redis_store import RedisSessionStore
from session.serializers import JsonSerializer


@pytest.fixture
def fake_clock(clock):
    clock.now = 0
    return clock


@pytest.fixture
def mock_store(fake_clock):
    """Store double that stamps lastSaved like the real adapter."""
    store = MagicMock(spec=RedisSessionStore)

    def _persist(record, fields):
        record.last_saved = fake_clock()
        return record.last_saved

    store.persist.side_effect = _persist
    return store


@pytest.fixture
def serializer():
    serializer = MagicMock(wraps=JsonSerializer())
    return serializer


@pytest.fixture
def scheduler(mock_store, serializer) -> FlushScheduler:
    return FlushScheduler(mock_store, serializer, save_interval_sec=20)


class TestNeedsFlush:
    """Tests for the pure flush decision."""

    def test_nothing_pending(self):
        assert not needs_flush(frozenset(), 100_000, 0, 20)

    def test_timing_only_inside_window(self):
        assert not needs_flush(TIMING_FIELDS, 19_999, 0, 20)

    def test_timing_only_at_window_boundary(self):
        assert needs_flush(TIMING_FIELDS, 20_000, 0, 20)

    def test_non_timing_field_always_flushes(self):
        assert needs_flush(TIMING_FIELDS | {"attributes"}, 1, 0, 20)
        assert needs_flush(frozenset({"lastNode"}), 0, 0, 20)

    def test_zero_interval_flushes_every_access(self):
        assert needs_flush(TIMING_FIELDS, 0, 0, 0)

    @given(
        pending=st.sets(st.sampled_from(SESSION_FIELDS), min_size=1).map(frozenset),
        last_saved=st.integers(min_value=0, max_value=10 ** 12),
        elapsed=st.integers(min_value=0, max_value=10 ** 7),
        interval=st.integers(min_value=0, max_value=3600),
    )
    def test_decision_matches_rule(self, pending, last_saved, elapsed, interval):
        """Property: flush iff a non-timing field is pending or the window elapsed."""
        expected = bool(pending - TIMING_FIELDS) or elapsed >= interval * 1000

        assert needs_flush(pending, last_saved + elapsed, last_saved, interval) is expected


class TestDebounce:
    """Tests for debounced access-time saves."""

    def test_literal_debounce_scenario(self, scheduler, mock_store, fake_clock):
        """Test saves at t=0 and t=25s but not at t=5s with a 20s interval."""
        record = SessionRecord.create("s1", now=0, node="node-a", max_idle=1_800_000)
        assert scheduler.complete(record) is True
        assert record.last_saved == 0

        fake_clock.now = 5_000
        record.access(5_000)
        assert scheduler.complete(record) is False
        assert record.last_saved == 0
        assert mock_store.persist.call_count == 1
        assert record.pending_fields() == TIMING_FIELDS

        fake_clock.now = 25_000
        record.access(25_000)
        assert scheduler.complete(record) is True
        assert record.last_saved == 25_000
        assert mock_store.persist.call_count == 2

    def test_attribute_change_flushes_immediately(self, scheduler, mock_store, fake_clock):
        """Test that a non-timing change is written regardless of elapsed time."""
        record = SessionRecord.create("s1", now=0, node="node-a", max_idle=1_800_000)
        scheduler.complete(record)

        fake_clock.now = 1_000
        record.access(1_000)
        record.set_attribute("user", "alice")

        assert scheduler.complete(record) is True
        fields = mock_store.persist.call_args.args[1]
        assert set(fields) == TIMING_FIELDS | {"attributes"}
        assert fields["attributes"] == '{"user":"alice"}'

    def test_skipped_flush_does_not_serialize(self, scheduler, serializer):
        record = SessionRecord("s1", 0, 0, 0, "node-a", 1_800_000, last_saved=0)
        record.access(1_000)

        scheduler.complete(record)

        serializer.serialize.assert_not_called()


class TestWrittenFields:
    """Tests for the field set handed to the store."""

    def test_new_session_writes_every_field(self, scheduler, mock_store):
        record = SessionRecord.create("s1", now=0, node="node-a", max_idle=1_800_000)

        scheduler.complete(record)

        fields = mock_store.persist.call_args.args[1]
        assert set(fields) == set(SESSION_FIELDS)
        assert fields["attributes"] == "{}"

    def test_timing_fields_travel_together(self, scheduler, mock_store):
        """Test that all three timing fields are written with the latest values."""
        record = SessionRecord("s1", 0, 0, 0, "node-a", 1_800_000, last_saved=0)
        record.access(30_000)

        scheduler.complete(record)

        fields = mock_store.persist.call_args.args[1]
        assert fields == {
            "accessed": "30000",
            "lastAccessed": "0",
            "expiryTime": "1830000",
        }

    def test_attributes_not_serialized_when_not_pending(self, scheduler, mock_store, serializer):
        record = SessionRecord("s1", 0, 0, 0, "node-a", 1_800_000, last_saved=0)
        record.change_owner("node-b")

        scheduler.complete(record)

        assert mock_store.persist.call_args.args[1] == {"lastNode": "node-b"}
        serializer.serialize.assert_not_called()

    def test_passivation_hooks_wrap_the_write(self, mock_store):
        scheduler = FlushScheduler(mock_store, MagicMock(), save_interval_sec=20)
        record = SessionRecord("s1", 0, 0, 0, "node-a", 1_800_000)
        events = []
        listener = MagicMock()
        listener.will_passivate.side_effect = lambda s: events.append("will_passivate")
        listener.did_activate.side_effect = lambda s: events.append("did_activate")
        mock_store.persist.side_effect = lambda r, f: events.append("persist")
        record.set_attribute("listener", listener)

        scheduler.complete(record)

        assert events == ["will_passivate", "persist", "did_activate"]


class TestFailures:
    """Tests for lossy, non-retried failure handling."""

    def test_store_failure_is_swallowed_and_changes_dropped(self, scheduler, mock_store, caplog):
        record = SessionRecord.create("s1", now=0, node="node-a", max_idle=1_800_000)
        mock_store.persist.side_effect = session_store_unavailable()

        with caplog.at_level(logging.WARNING, logger="session.flush"):
            assert scheduler.complete(record) is False

        assert not record.has_changes()
        assert record.last_saved == 0
        assert any("changes dropped" in r.getMessage() for r in caplog.records)

    def test_serialization_failure_is_swallowed(self, mock_store):
        scheduler = FlushScheduler(mock_store, JsonSerializer(), save_interval_sec=20)
        record = SessionRecord("s1", 0, 0, 0, "node-a", 1_800_000)
        record.set_attribute("bad", object())

        assert scheduler.complete(record) is False
        mock_store.persist.assert_not_called()
        assert not record.has_changes()

    def test_second_flush_without_changes_is_noop(self, scheduler, mock_store):
        """Test that a completed flush leaves nothing to write, success or not."""
        record = SessionRecord.create("s1", now=0, node="node-a", max_idle=1_800_000)
        mock_store.persist.side_effect = session_store_unavailable()
        scheduler.complete(record)
        mock_store.persist.reset_mock()

        assert scheduler.complete(record) is False
        mock_store.persist.assert_not_called()

    def test_invalidated_record_is_not_flushed(self, scheduler, mock_store):
        record = SessionRecord.create("s1", now=0, node="node-a", max_idle=1_800_000)
        record.invalidate()

        assert scheduler.complete(record) is False
        mock_store.persist.assert_not_called()


class TestForcedPersist:
    """Tests for persist(), which bypasses the debounce decision."""

    def test_persists_timing_only_changes(self, scheduler, mock_store):
        record = SessionRecord("s1", 0, 0, 0, "node-a", 1_800_000, last_saved=0)
        record.access(1_000)

        assert scheduler.persist(record) is True
        mock_store.persist.assert_called_once()

    def test_nothing_pending(self, scheduler, mock_store):
        record = SessionRecord("s1", 0, 0, 0, "node-a", 1_800_000)

        assert scheduler.persist(record) is False
        mock_store.persist.assert_not_called()

    def test_failure_propagates(self, scheduler, mock_store):
        record = SessionRecord("s1", 0, 0, 0, "node-a", 1_800_000)
        record.set_attribute("a", 1)
        mock_store.persist.side_effect = session_store_unavailable()

        with pytest.raises(Exception, match="Session store unavailable"):
            scheduler.persist(record)
        assert not record.has_changes()
