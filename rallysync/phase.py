"""Rally phase and per-participant countdown derivation.

Everything here is a pure function of the roster, the active rally and the
corrected clock reading, and is recomputed from scratch on every tick.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from rallysync.utils import format_ms, format_time_of_day, is_finite_number

logger = logging.getLogger(__name__)


class RallyPhase(Enum):
    """Overall phase of the active rally."""

    JOIN = "JOIN"
    """Before launch: participants are gathering."""

    MARCH = "MARCH"
    """Launched, still in transit."""

    LANDED = "LANDED"
    """The shared arrival instant has passed."""


@dataclass(frozen=True, slots=True)
class Participant:
    """A roster entry mirrored from the room server."""

    id: str
    name: str
    march_ms: int


@dataclass(frozen=True, slots=True)
class RallyDescriptor:
    """The single active rally of a room, as published by the server."""

    starter_id: str
    launch_at: float
    rally_duration_ms: float | None = None
    pre_delay_ms: float = 0
    arrival_at: float | None = None


@dataclass(frozen=True, slots=True)
class CountdownRow:
    """Derived timing for one participant."""

    participant: Participant
    start_at: float
    """When this participant must start marching to land at the shared arrival."""
    rally_start_at: float
    """When this participant's own rally would have to open."""
    diff_ms: float
    diff_to_rally_start_ms: float
    diff_from_launch_ms: float
    land_in_ms: float

    @property
    def participant_id(self) -> str:
        return self.participant.id

    @property
    def name(self) -> str:
        return self.participant.name


@dataclass(frozen=True, slots=True)
class DerivedView:
    """Phase and countdown rows for one tick."""

    starter: Participant
    launch_at: float
    rally_start_at: float
    arrival_at: float
    rows: tuple[CountdownRow, ...]
    join_remaining_ms: float
    phase: RallyPhase

    def describe(self) -> str:
        """Return a human-friendly description of the view."""
        lines = [
            f"Phase: {self.phase.value} (starter: {self.starter.name})",
            f"Launch: {format_time_of_day(self.launch_at)}",
            f"Landing: {format_time_of_day(self.arrival_at)}",
        ]
        if self.phase is RallyPhase.JOIN:
            lines.append(f"Launch in: {format_ms(self.join_remaining_ms)}")
        for row in self.rows:
            if self.phase is RallyPhase.JOIN:
                countdown = format_ms(row.diff_to_rally_start_ms)
                label = "open rally in"
            else:
                countdown = format_ms(row.diff_ms)
                label = "march in"
            sign = "+" if row.diff_from_launch_ms >= 0 else "-"
            lines.append(
                f"  {row.name:<20} {label} {countdown}"
                f"  (launch {sign}{format_ms(abs(row.diff_from_launch_ms))},"
                f" lands in {format_ms(row.land_in_ms)})"
            )
        return "\n".join(lines)


def resolve_rally_duration(rally: RallyDescriptor, default_rally_duration_ms: float) -> float:
    """Pick the rally duration, falling back to the local default.

    Negative durations are clamped to zero.
    """
    duration = rally.rally_duration_ms
    if not is_finite_number(duration):
        duration = default_rally_duration_ms
    assert duration is not None
    if duration < 0:
        logger.debug("Clamping negative rally duration %s to 0", duration)
        return 0.0
    return float(duration)


def derive_view(
    participants: Sequence[Participant],
    rally: RallyDescriptor | None,
    corrected_now: float,
    *,
    default_rally_duration_ms: float,
) -> DerivedView | None:
    """Derive the rally phase and countdown rows.

    Args:
        participants: Current roster, in server order.
        rally: Active rally, or None.
        corrected_now: Local clock converted to server time (ms).
        default_rally_duration_ms: Used when the rally does not carry a duration.

    Returns:
        The derived view, or None when there is no rally or its starter
        is no longer on the roster.
    """
    if rally is None:
        return None

    starter = next((p for p in participants if p.id == rally.starter_id), None)
    if starter is None:
        return None

    launch_at = rally.launch_at
    rally_duration_ms = resolve_rally_duration(rally, default_rally_duration_ms)
    rally_start_at = launch_at - rally_duration_ms
    arrival_at = (
        rally.arrival_at if is_finite_number(rally.arrival_at) else launch_at + starter.march_ms
    )
    assert arrival_at is not None

    join_remaining_ms = launch_at - corrected_now
    phase = RallyPhase.JOIN if join_remaining_ms > 0 else RallyPhase.MARCH
    if arrival_at <= corrected_now:
        phase = RallyPhase.LANDED

    rows: list[CountdownRow] = []
    for participant in participants:
        # Back-computed so every march ends exactly at arrival_at
        start_at = arrival_at - participant.march_ms
        player_rally_start_at = start_at - rally_duration_ms
        land_in_ms = arrival_at - corrected_now
        if land_in_ms < 0:
            continue
        rows.append(
            CountdownRow(
                participant=participant,
                start_at=start_at,
                rally_start_at=player_rally_start_at,
                diff_ms=start_at - corrected_now,
                diff_to_rally_start_ms=player_rally_start_at - corrected_now,
                diff_from_launch_ms=start_at - launch_at,
                land_in_ms=land_in_ms,
            )
        )

    # Stable sort: ties keep roster order
    rows.sort(key=lambda row: row.start_at)

    return DerivedView(
        starter=starter,
        launch_at=launch_at,
        rally_start_at=rally_start_at,
        arrival_at=arrival_at,
        rows=tuple(rows),
        join_remaining_ms=join_remaining_ms,
        phase=phase,
    )
