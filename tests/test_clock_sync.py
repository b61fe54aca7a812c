import math
import random

import pytest

from rallysync.clock_sync import (
    SYNC_FRESH_MS,
    ClockSynchronizer,
    estimate_round_trip,
)


def test_estimate_round_trip_example():
    sample = estimate_round_trip(1000, 1050, 1060, 1120)
    assert sample is not None
    assert sample.rtt_ms == 110
    assert sample.offset_ms == -5
    assert sample.at_ts == 1120


def test_estimate_round_trip_clamps_negative_rtt():
    # Server claims it held the request longer than the whole round trip
    sample = estimate_round_trip(1000, 1000, 1200, 1100)
    assert sample is not None
    assert sample.rtt_ms == 0


@pytest.mark.parametrize(
    "t0,t1,t2,t3",
    [
        (1000, math.nan, 1060, 1120),
        (1000, math.inf, 1060, 1120),
        (None, 1050, 1060, 1120),
        (1000, "1050", 1060, 1120),
        (1000, 1050, True, 1120),
    ],
)
def test_estimate_round_trip_rejects_non_finite(t0, t1, t2, t3):
    assert estimate_round_trip(t0, t1, t2, t3) is None


def test_initial_state_has_zero_offset():
    clock = ClockSynchronizer()
    assert clock.best_offset_ms == 0
    assert clock.best_rtt_ms is None
    assert clock.last_sync_at is None
    assert clock.corrected_now(5000) == 5000
    assert not clock.is_live(5000)


def test_best_offset_tracks_min_rtt_of_last_six():
    rng = random.Random(42)
    clock = ClockSynchronizer()
    inserted = []
    for i in range(40):
        offset = rng.uniform(-500, 500)
        rtt = rng.uniform(5, 300)
        clock.record_sample(offset, rtt, 1000 + i)
        inserted.append((offset, rtt, 1000 + i))

        window = inserted[-6:]
        best = min(window, key=lambda s: s[1])
        assert clock.sample_count == len(window)
        assert clock.best_offset_ms == best[0]
        assert clock.best_rtt_ms == best[1]
        assert clock.last_sync_at == best[2]


def test_old_best_sample_is_evicted():
    clock = ClockSynchronizer()
    clock.record_sample(-40, 5, 1)
    for i in range(6):
        clock.record_sample(10 + i, 100, 2 + i)
    # The 5ms sample fell out of the window
    assert clock.best_rtt_ms == 100
    assert clock.best_offset_ms == 10


def test_rtt_tie_keeps_earliest_sample():
    clock = ClockSynchronizer()
    clock.record_sample(1, 50, 10)
    clock.record_sample(2, 50, 20)
    assert clock.best_offset_ms == 1


def test_non_finite_response_is_ignored():
    clock = ClockSynchronizer()
    assert clock.process_response(1000, 1050, 1060, 1120)
    before = clock.state

    assert not clock.process_response(1000, math.nan, 1060, 1130)
    assert not clock.record_sample(math.inf, 10, 1200)

    assert clock.state == before
    assert clock.best_offset_ms == -5
    assert clock.sample_count == 1


def test_corrected_now_applies_best_offset():
    clock = ClockSynchronizer()
    clock.process_response(1000, 1050, 1060, 1120)
    assert clock.corrected_now(2000) == 1995


def test_freshness_threshold():
    clock = ClockSynchronizer()
    clock.record_sample(0, 10, 10_000)
    assert clock.is_live(10_000)
    assert clock.is_live(10_000 + SYNC_FRESH_MS - 1)
    assert not clock.is_live(10_000 + SYNC_FRESH_MS)


def test_reset_forgets_samples():
    clock = ClockSynchronizer()
    clock.record_sample(12, 10, 100)
    clock.reset()
    assert clock.sample_count == 0
    assert clock.best_offset_ms == 0
