"""Round-trip clock synchronization against the room server.

Each TIME_SYNC exchange yields four timestamps: t0 (client send), t1 (server
receive), t2 (server reply) and t3 (client receive). From these we estimate the
offset between the local wall clock and the server clock, and the round-trip
time spent on the network. The RTT bounds the offset error, so the synchronizer
keeps a short rolling window of samples and trusts the one with the lowest RTT.
"""

from __future__ import annotations

import collections
import logging
from dataclasses import dataclass
from typing import Final

from rallysync.utils import is_finite_number

logger = logging.getLogger(__name__)

SYNC_SAMPLE_COUNT: Final[int] = 6
"""Samples kept in the rolling window, and requests issued per burst."""
SYNC_BURST_SPACING_S: Final[float] = 0.25
"""Delay between requests inside a burst."""
SYNC_INTERVAL_S: Final[float] = 5.0
"""Delay between periodic bursts."""
SYNC_FRESH_MS: Final[float] = 60_000.0
"""Age after which the offset is still used but no longer considered live."""


@dataclass(frozen=True, slots=True)
class ClockSample:
    """One completed round trip."""

    offset_ms: float
    rtt_ms: float
    at_ts: float


@dataclass(frozen=True, slots=True)
class ClockSyncState:
    """Trusted offset derived from the current sample window."""

    best_offset_ms: float = 0.0
    best_rtt_ms: float | None = None
    last_sync_at: float | None = None


def estimate_round_trip(t0: float, t1: float, t2: float, t3: float) -> ClockSample | None:
    """Estimate offset and RTT from one request/response exchange.

    Returns None when any timestamp is not a finite number.
    """
    if not all(is_finite_number(v) for v in (t0, t1, t2, t3)):
        return None
    rtt = max(0.0, (t3 - t0) - (t2 - t1))
    offset = ((t1 - t0) + (t2 - t3)) / 2
    return ClockSample(offset_ms=float(offset), rtt_ms=float(rtt), at_ts=float(t3))


class ClockSynchronizer:
    """Maintains the trusted offset between the local clock and the server clock."""

    def __init__(self, window: int = SYNC_SAMPLE_COUNT) -> None:
        self._samples: collections.deque[ClockSample] = collections.deque(maxlen=window)
        self._state = ClockSyncState()

    @property
    def state(self) -> ClockSyncState:
        return self._state

    @property
    def best_offset_ms(self) -> float:
        return self._state.best_offset_ms

    @property
    def best_rtt_ms(self) -> float | None:
        return self._state.best_rtt_ms

    @property
    def last_sync_at(self) -> float | None:
        return self._state.last_sync_at

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def samples(self) -> tuple[ClockSample, ...]:
        return tuple(self._samples)

    def record_sample(self, offset_ms: float, rtt_ms: float, at_ts: float) -> bool:
        """Add a sample and recompute the trusted offset.

        Non-finite input is discarded without touching the window.

        Returns:
            True if the sample was recorded.
        """
        if not all(is_finite_number(v) for v in (offset_ms, rtt_ms, at_ts)):
            return False

        self._samples.append(ClockSample(float(offset_ms), float(rtt_ms), float(at_ts)))
        # min() keeps the earliest sample on RTT ties
        best = min(self._samples, key=lambda sample: sample.rtt_ms)
        self._state = ClockSyncState(
            best_offset_ms=best.offset_ms,
            best_rtt_ms=best.rtt_ms,
            last_sync_at=best.at_ts,
        )
        return True

    def process_response(self, t0: float, t1: float, t2: float, t3: float) -> bool:
        """Record the sample for one completed exchange.

        Returns:
            True if the exchange produced a valid sample.
        """
        sample = estimate_round_trip(t0, t1, t2, t3)
        if sample is None:
            logger.debug("Ignoring time sync response with non-finite timestamps")
            return False
        recorded = self.record_sample(sample.offset_ms, sample.rtt_ms, sample.at_ts)
        if recorded:
            logger.debug(
                "Time sync sample: offset=%.1fms rtt=%.1fms (best offset=%.1fms rtt=%.1fms)",
                sample.offset_ms,
                sample.rtt_ms,
                self._state.best_offset_ms,
                self._state.best_rtt_ms,
            )
        return recorded

    def corrected_now(self, local_now_ms: float) -> float:
        """Convert a local wall-clock reading to server time."""
        return local_now_ms + self._state.best_offset_ms

    def is_live(self, local_now_ms: float) -> bool:
        """Whether the last sync is recent enough to be trusted."""
        last = self._state.last_sync_at
        return last is not None and local_now_ms - last < SYNC_FRESH_MS

    def reset(self) -> None:
        """Forget all samples."""
        self._samples.clear()
        self._state = ClockSyncState()
