from __future__ import annotations

import numpy as np
import pytest


class RecordingOutput:
    """AudioOutput stand-in with a manually driven clock."""

    def __init__(self, sample_rate: int = 8000, current_time: float = 100.0):
        self.sample_rate = sample_rate
        self.current_time = current_time
        self.played: list[tuple[float, np.ndarray, float]] = []
        self.closed = False

    def play(self, samples, *, at, gain=1.0):
        self.played.append((at, samples, gain))

    def close(self):
        self.closed = True

    @property
    def times(self) -> list[float]:
        return [at for at, _, _ in self.played]


class FakeAnnouncer:
    def __init__(self):
        self.spoken: list[tuple[str, float]] = []
        self.unlocked = 0
        self.disposed = False

    def speak_name(self, name, *, volume=1.0):
        self.spoken.append((name, volume))

    def unlock(self):
        self.unlocked += 1

    async def dispose(self):
        self.disposed = True


class ManualClock:
    """Local wall clock in ms that tests advance explicitly."""

    def __init__(self, now: float = 1_700_000_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def recording_output() -> RecordingOutput:
    return RecordingOutput()


@pytest.fixture
def fake_announcer() -> FakeAnnouncer:
    return FakeAnnouncer()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()
