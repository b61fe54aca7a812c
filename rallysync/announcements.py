"""At-most-once gating for countdown cues and name calls."""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass
from typing import Final

from rallysync.phase import DerivedView, RallyPhase

logger = logging.getLogger(__name__)

LEAD_WINDOW_MS: Final[float] = 5_200.0
"""A cue fires once its target is at most this far ahead."""
MIN_GUARD_MS: Final[float] = 600.0
"""Targets closer than this are skipped; scheduling would land late."""


@dataclass(frozen=True, slots=True)
class AnnouncementKey:
    """Identifies one cue: what kind, for whom, and for which instant."""

    phase: str
    participant_id: str
    target_at: float


@dataclass(frozen=True, slots=True)
class Announcement:
    """A cue that passed the gate and must be produced now."""

    key: AnnouncementKey
    participant_name: str
    target_at: float


class AnnouncementDeduplicator:
    """Rally-scoped set of cues that were already produced."""

    def __init__(self) -> None:
        self._announced: set[AnnouncementKey] = set()

    def __len__(self) -> int:
        return len(self._announced)

    def __contains__(self, key: object) -> bool:
        return key in self._announced

    def should_announce(self, key: AnnouncementKey) -> bool:
        """Return True if the cue for this key was not produced yet.

        A True result must be followed by mark_announced() before the cue is
        produced.
        """
        return key not in self._announced

    def mark_announced(self, key: AnnouncementKey) -> None:
        self._announced.add(key)

    def reset(self) -> None:
        """Forget every key; called when a rally ends or another one starts."""
        if self._announced:
            logger.debug("Clearing %d announcement keys", len(self._announced))
        self._announced.clear()


def in_trigger_window(
    target_at: float,
    corrected_now: float,
    *,
    lead_window_ms: float = LEAD_WINDOW_MS,
    min_guard_ms: float = MIN_GUARD_MS,
) -> bool:
    """Whether a cue for target_at should fire at corrected_now."""
    ms_left = target_at - corrected_now
    return 0 < ms_left <= lead_window_ms and ms_left > min_guard_ms


def plan_announcements(
    view: DerivedView,
    corrected_now: float,
    dedup: AnnouncementDeduplicator,
    *,
    rally_calls: bool = True,
    march_calls: bool = False,
    selected_ids: Collection[str] = (),
    lead_window_ms: float = LEAD_WINDOW_MS,
    min_guard_ms: float = MIN_GUARD_MS,
) -> list[Announcement]:
    """Select the cues due on this tick and mark them as announced.

    During JOIN each participant is called ahead of their own rally opening;
    during MARCH ahead of their march start. When selected_ids is non-empty,
    only those participants are eligible.

    Args:
        view: The derived view for this tick.
        corrected_now: Server-corrected clock reading (ms).
        dedup: Gate shared across ticks of the same rally.
        rally_calls: Announce rally openings during JOIN.
        march_calls: Announce march starts during MARCH.
        selected_ids: Participants opted in to local notification.
        lead_window_ms: See in_trigger_window().
        min_guard_ms: See in_trigger_window().

    Returns:
        Announcements to produce, in row order.
    """
    if view.phase is RallyPhase.JOIN and rally_calls:
        kind = "rally"
    elif view.phase is RallyPhase.MARCH and march_calls:
        kind = "march"
    else:
        return []

    only_selected = len(selected_ids) > 0
    due: list[Announcement] = []
    for row in view.rows:
        if only_selected and row.participant_id not in selected_ids:
            continue

        target_at = row.rally_start_at if kind == "rally" else row.start_at
        key = AnnouncementKey(kind, row.participant_id, target_at)
        if not dedup.should_announce(key):
            continue
        if not in_trigger_window(
            target_at, corrected_now, lead_window_ms=lead_window_ms, min_guard_ms=min_guard_ms
        ):
            continue

        dedup.mark_announced(key)
        due.append(Announcement(key=key, participant_name=row.name, target_at=target_at))
    return due
