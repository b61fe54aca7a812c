"""Synchronized rally countdowns for several players on unsynchronized clocks."""

from rallysync.announcements import AnnouncementDeduplicator, AnnouncementKey
from rallysync.audio import AudioCountdownScheduler
from rallysync.clock_sync import ClockSample, ClockSynchronizer, ClockSyncState
from rallysync.phase import (
    CountdownRow,
    DerivedView,
    Participant,
    RallyDescriptor,
    RallyPhase,
    derive_view,
)

__all__ = [
    "AnnouncementDeduplicator",
    "AnnouncementKey",
    "AudioCountdownScheduler",
    "ClockSample",
    "ClockSyncState",
    "ClockSynchronizer",
    "CountdownRow",
    "DerivedView",
    "Participant",
    "RallyDescriptor",
    "RallyPhase",
    "derive_view",
]
