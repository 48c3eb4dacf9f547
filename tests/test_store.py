"""
Tests for the in-memory reading store.
"""

import threading

import pytest

from airmonitor.core.exceptions import ValidationError
from airmonitor.schemas.readings import ConnectionStatus, RunningStats
from airmonitor.services.store import ReadingStore


class TestRecord:
    """Tests for ReadingStore.record."""

    def test_eviction_and_stats_scenario(self, clock):
        """Test stats and history with capacity 2 after three readings."""
        store = ReadingStore(capacity=2, clock=clock)

        store.record({"temperature": 25, "humidity": 40})
        store.record({"temperature": 30, "humidity": 80})
        snapshot = store.record({"temperature": 10, "humidity": 20})

        history = store.history()
        assert [(r.temperature, r.humidity) for r in history] == [(30, 80), (10, 20)]

        stats = snapshot.stats
        assert stats.max_temp == 30
        assert stats.min_temp == 10
        assert stats.max_hum == 80
        assert stats.min_hum == 20
        assert stats.avg_temp == 20
        assert stats.avg_hum == 50
        assert stats.total_readings == 3

    def test_history_never_exceeds_capacity(self, store):
        """Test that history keeps the most recent min(n, capacity) readings."""
        for n in range(1, 13):
            store.record({"temperature": n, "humidity": n})

            history = store.history(limit=100)
            assert len(history) == min(n, store.capacity)
            expected = list(range(max(1, n - store.capacity + 1), n + 1))
            assert [r.temperature for r in history] == expected

    def test_total_readings_survives_eviction(self, store):
        """Test that totalReadings counts every record, not just buffered ones."""
        for i in range(20):
            store.record({"temperature": 20 + i, "humidity": 50})

        assert len(store) == 5
        assert store.stats().total_readings == 20

    def test_average_follows_buffer_window(self, store):
        """Test that averages are the mean of readings currently buffered."""
        temperatures = [12.5, 30.0, 18.25, 22.0, 40.5, 3.0, 27.75, 19.0]

        for i, temp in enumerate(temperatures):
            snapshot = store.record({"temperature": temp, "humidity": temp * 2})

            window = temperatures[max(0, i + 1 - store.capacity):i + 1]
            assert snapshot.stats.avg_temp == pytest.approx(sum(window) / len(window))
            assert snapshot.stats.avg_hum == pytest.approx(2 * sum(window) / len(window))

    def test_min_max_are_lifetime_values(self, store):
        """Test that min/max keep values that were already evicted."""
        store.record({"temperature": -5, "humidity": 99})
        for _ in range(10):
            store.record({"temperature": 20, "humidity": 50})

        stats = store.stats()
        assert stats.min_temp == -5
        assert stats.max_hum == 99

    def test_record_sets_timestamp_and_status(self, store, clock):
        """Test that record stamps the reading with the clock and marks active."""
        snapshot = store.record({"temperature": 21, "humidity": 45})

        assert snapshot.current.status == ConnectionStatus.ACTIVE
        assert snapshot.current.reading.timestamp == clock.now
        assert snapshot.current.updated_at == clock.now

    def test_sequence_ids_increase(self, store):
        """Test that sequence ids are assigned in order."""
        ids = [store.record({"temperature": 20, "humidity": 50}).current.reading.sequence_id for _ in range(7)]

        assert ids == [1, 2, 3, 4, 5, 6, 7]

    def test_heat_index_defaults_to_temperature(self, store):
        """Test that a missing or invalid heatIndex falls back to temperature."""
        missing = store.record({"temperature": 26.5, "humidity": 40})
        invalid = store.record({"temperature": 27.5, "humidity": 40, "heatIndex": "n/a"})
        given = store.record({"temperature": 28.5, "humidity": 40, "heatIndex": 30.1})

        assert missing.current.reading.heat_index == 26.5
        assert invalid.current.reading.heat_index == 27.5
        assert given.current.reading.heat_index == 30.1

    def test_oversized_heat_index_falls_back(self, store):
        """Test that a heat index too large for a float uses the temperature."""
        snapshot = store.record({"temperature": 26.5, "humidity": 40, "heatIndex": 10 ** 400})

        assert snapshot.current.reading.heat_index == 26.5

    def test_numeric_strings_accepted(self, store):
        """Test that form-style numeric strings are parsed."""
        snapshot = store.record({"temperature": "23.4", "humidity": "55"})

        assert snapshot.current.reading.temperature == 23.4
        assert snapshot.current.reading.humidity == 55.0


class TestValidation:
    """Tests for rejected payloads."""

    @pytest.mark.parametrize("payload", [
        {"humidity": 40},
        {"temperature": 25},
        {"temperature": None, "humidity": 40},
        {"temperature": "warm", "humidity": 40},
        {"temperature": 25, "humidity": float("nan")},
        {"temperature": float("inf"), "humidity": 40},
        {"temperature": True, "humidity": 40},
        {"temperature": 10 ** 400, "humidity": 40},
        {"temperature": 25, "humidity": -(10 ** 400)},
    ])
    def test_invalid_payload_rejected(self, store, payload):
        """Test that invalid payloads raise ValidationError."""
        with pytest.raises(ValidationError):
            store.record(payload)

    def test_rejected_payload_does_not_mutate(self, store):
        """Test that a rejected payload leaves the store untouched."""
        store.record({"temperature": 20, "humidity": 50})
        before = store.current_snapshot()

        with pytest.raises(ValidationError):
            store.record({"temperature": 99})

        assert store.current_snapshot() == before
        assert len(store) == 1

    def test_non_mapping_rejected(self, store):
        """Test that a non-object payload is rejected."""
        with pytest.raises(ValidationError):
            store.record([25, 40])


class TestHistory:
    """Tests for ReadingStore.history."""

    def test_default_limit(self, clock):
        """Test that history returns 50 readings by default."""
        store = ReadingStore(capacity=100, clock=clock)
        for i in range(80):
            store.record({"temperature": i, "humidity": 50})

        history = store.history()
        assert len(history) == 50
        assert history[0].temperature == 30
        assert history[-1].temperature == 79

    def test_limit_larger_than_buffer(self, store):
        """Test that a large limit is silently capped."""
        store.record({"temperature": 20, "humidity": 50})
        store.record({"temperature": 21, "humidity": 50})

        assert len(store.history(limit=1000)) == 2

    def test_non_positive_limit(self, store):
        """Test that zero or negative limits return nothing."""
        store.record({"temperature": 20, "humidity": 50})

        assert store.history(limit=0) == []
        assert store.history(limit=-3) == []

    def test_reads_have_no_side_effects(self, store):
        """Test that repeated reads (fallback polling) do not change state."""
        store.record({"temperature": 20, "humidity": 50})
        snapshot = store.current_snapshot()

        for _ in range(100):
            store.history()
            store.stats()
            store.current_snapshot()

        assert store.current_snapshot() == snapshot


class TestClear:
    """Tests for ReadingStore.clear."""

    def test_clear_resets_history_and_stats(self, store):
        """Test that clear restores initial statistics and empties history."""
        for i in range(8):
            store.record({"temperature": 20 + i, "humidity": 40 + i})

        store.clear()

        assert store.history() == []
        assert store.stats() == RunningStats()
        stats = store.stats()
        assert (stats.max_temp, stats.min_temp, stats.max_hum, stats.min_hum) == (-999, 999, 0, 100)
        assert stats.total_readings == 0
        assert not stats.has_data

    def test_clear_keeps_current_reading(self, store):
        """Test that the last reading is still available after clear."""
        store.record({"temperature": 31.5, "humidity": 62})

        store.clear()

        current = store.current_snapshot().current
        assert current.status == ConnectionStatus.ACTIVE
        assert current.reading.temperature == 31.5
        assert current.reading.humidity == 62

    def test_clear_resets_sequence(self, store):
        """Test that sequence ids start over after clear."""
        store.record({"temperature": 20, "humidity": 50})
        store.record({"temperature": 20, "humidity": 50})
        store.clear()

        snapshot = store.record({"temperature": 20, "humidity": 50})
        assert snapshot.current.reading.sequence_id == 1
        assert snapshot.stats.total_readings == 1


class TestStaleness:
    """Tests for ReadingStore.mark_disconnected_if_stale."""

    def test_initial_snapshot_is_waiting(self, store):
        """Test the snapshot before any reading."""
        snapshot = store.current_snapshot()

        assert snapshot.current.status == ConnectionStatus.WAITING
        assert snapshot.current.reading is None
        assert not snapshot.stats.has_data

    def test_fires_once_per_transition(self, store, clock):
        """Test that staleness is edge-triggered."""
        store.record({"temperature": 20, "humidity": 50})

        clock.advance(60_000)
        assert store.mark_disconnected_if_stale(60_000) is None

        clock.advance(1)
        snapshot = store.mark_disconnected_if_stale(60_000)
        assert snapshot.current.status == ConnectionStatus.DISCONNECTED
        assert snapshot.current.reading.temperature == 20

        clock.advance(60_000)
        assert store.mark_disconnected_if_stale(60_000) is None

    def test_record_restores_active(self, store, clock):
        """Test that a reading after disconnection brings the stream back."""
        store.record({"temperature": 20, "humidity": 50})
        clock.advance(120_000)
        store.mark_disconnected_if_stale(60_000)

        snapshot = store.record({"temperature": 21, "humidity": 50})

        assert snapshot.current.status == ConnectionStatus.ACTIVE
        clock.advance(61_000)
        assert store.mark_disconnected_if_stale(60_000) is not None

    def test_silent_device_flagged(self, store, clock):
        """Test that a device that never reported is flagged too."""
        clock.advance(61_000)

        snapshot = store.mark_disconnected_if_stale(60_000)

        assert snapshot.current.status == ConnectionStatus.DISCONNECTED
        assert snapshot.current.reading is None


def test_capacity_must_be_positive():
    """Test that a zero capacity is rejected."""
    with pytest.raises(ValueError):
        ReadingStore(capacity=0)


class TestConcurrency:
    """Tests for records, clears and reads from several threads."""

    def test_concurrent_records(self, store):
        """Test that parallel records are counted once each with unique sequence ids."""
        threads_count, per_thread = 8, 250
        sequence_ids = []
        ids_lock = threading.Lock()

        def worker(n):
            for i in range(per_thread):
                snapshot = store.record({"temperature": n, "humidity": i % 100})
                with ids_lock:
                    sequence_ids.append(snapshot.current.reading.sequence_id)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        total = threads_count * per_thread
        assert store.stats().total_readings == total
        assert sorted(sequence_ids) == list(range(1, total + 1))
        history = store.history(limit=100)
        assert len(history) == store.capacity
        assert [r.sequence_id for r in history] == list(range(total - store.capacity + 1, total + 1))

    def test_concurrent_records_clears_and_reads(self, store):
        """Test that history stays bounded and ordered while clears interleave."""
        errors = []

        def writer():
            for i in range(300):
                store.record({"temperature": 20 + i % 10, "humidity": 50})

        def clearer():
            for _ in range(50):
                store.clear()

        def reader():
            for _ in range(300):
                history = store.history(limit=100)
                ids = [r.sequence_id for r in history]
                if len(history) > store.capacity or ids != sorted(set(ids)):
                    errors.append(ids)

        threads = [threading.Thread(target=writer) for _ in range(4)]
        threads += [threading.Thread(target=clearer), threading.Thread(target=reader)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        history = store.history(limit=100)
        assert len(history) <= store.capacity
        assert store.stats().total_readings >= len(history)
