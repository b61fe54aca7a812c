"""A joined room: the owned state that turns server snapshots into cues."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Final

from rallysync.announcements import AnnouncementDeduplicator, plan_announcements
from rallysync.audio import AudioCountdownScheduler, CountdownAssets
from rallysync.client import RallyClient
from rallysync.phase import DerivedView, RallyDescriptor, derive_view
from rallysync.settings import ClientSettings
from rallysync.speech import VoiceAnnouncer
from rallysync.utils import RepeatingTask, create_task, wall_clock_ms

logger = logging.getLogger(__name__)

TICK_INTERVAL_S: Final[float] = 0.2
RESUME_GAP_MS: Final[float] = 2_000.0
"""A longer gap between ticks means the process was suspended."""

ViewListener = Callable[[DerivedView | None], None]


class RallySession:
    """Owns everything a client needs for one room.

    The session is created when a room is joined and disposed when it is
    left; there is no module-level audio or connection state. Each tick
    reads the corrected clock, derives the view from the latest snapshot and
    produces the name calls and countdowns that became due.
    """

    def __init__(
        self,
        client: RallyClient,
        settings: ClientSettings,
        *,
        scheduler: AudioCountdownScheduler,
        announcer: VoiceAnnouncer,
        wall_clock: Callable[[], float] = wall_clock_ms,
    ) -> None:
        self.client = client
        self.settings = settings
        self.scheduler = scheduler
        self.announcer = announcer
        self.dedup = AnnouncementDeduplicator()
        self._wall_clock = wall_clock
        self._tick_task: RepeatingTask | None = None
        self._preload_task: asyncio.Task[CountdownAssets | None] | None = None
        self._rally_identity: tuple[str, float] | None = None
        self._last_tick_at: float | None = None
        self._view: DerivedView | None = None
        self._view_listeners: list[ViewListener] = []

    @property
    def view(self) -> DerivedView | None:
        """View derived on the last tick."""
        return self._view

    def add_view_listener(self, listener: ViewListener) -> Callable[[], None]:
        """Register a listener called with the view on every tick."""
        self._view_listeners.append(listener)
        return lambda: self._view_listeners.remove(listener)

    async def start(self) -> None:
        """Start ticking and begin loading countdown sounds in the background.

        Ticks before the sounds are loaded fall back to synthesized tones.
        """
        self._tick_task = RepeatingTask(TICK_INTERVAL_S, self.tick, name="rally-tick")
        self._tick_task.start()
        self._preload_task = create_task(
            self.scheduler.preload_assets(), name="countdown-preload-wait", eager_start=False
        )

    async def dispose(self) -> None:
        """Stop ticking and release audio and speech resources."""
        if self._tick_task is not None:
            await self._tick_task.stop()
            self._tick_task = None
        await self.scheduler.dispose()
        preload, self._preload_task = self._preload_task, None
        if preload is not None:
            await preload
        await self.announcer.dispose()
        await self.settings.flush()

    def corrected_now(self) -> float:
        return self.client.clock.corrected_now(self._wall_clock())

    def sync_label(self) -> str:
        """Return "Live" while the clock offset is fresh, "Syncing" otherwise."""
        return "Live" if self.client.clock.is_live(self._wall_clock()) else "Syncing"

    def tick(self) -> DerivedView | None:
        """Recompute the view and fire due cues."""
        local_now = self._wall_clock()
        if self._last_tick_at is not None and local_now - self._last_tick_at > RESUME_GAP_MS:
            # Woke up from suspend: the offset may have drifted meanwhile
            logger.info(
                "Clock jumped %.0fms between ticks, resyncing", local_now - self._last_tick_at
            )
            self.client.resync()
        self._last_tick_at = local_now

        now = self.client.clock.corrected_now(local_now)
        state = self.client.state
        self._track_rally(state.rally)

        view = derive_view(
            state.players,
            state.rally,
            now,
            default_rally_duration_ms=self.settings.default_rally_duration_ms,
        )
        self._view = view

        if view is not None and self.settings.tts_enabled:
            due = plan_announcements(
                view,
                now,
                self.dedup,
                rally_calls=self.settings.tts_rally_calls,
                march_calls=self.settings.tts_march_calls,
                selected_ids=self.settings.selected_ids,
            )
            for announcement in due:
                logger.info(
                    "Calling %s for %s at %.0f",
                    announcement.participant_name,
                    announcement.key.phase,
                    announcement.target_at,
                )
                self.announcer.speak_name(
                    announcement.participant_name, volume=self.settings.tts_volume
                )
                self.scheduler.schedule_countdown(
                    announcement.target_at, now, gain_factor=self.settings.beep_gain
                )

        for listener in list(self._view_listeners):
            listener(view)
        return view

    async def start_rally(self, starter_id: str) -> None:
        """Unlock audio output, then ask the server to start a rally."""
        if self.settings.tts_enabled:
            self.announcer.unlock()
        self.scheduler.unlock()
        await self.client.start_rally(
            starter_id,
            rally_minutes=self.settings.rally_minutes,
            pre_delay_seconds=self.settings.pre_delay_seconds,
        )

    async def end_rally(self) -> None:
        await self.client.end_rally()
        self.dedup.reset()

    def _track_rally(self, rally: RallyDescriptor | None) -> None:
        """Reset announcements when the rally ends or a different one starts."""
        identity = (rally.starter_id, rally.launch_at) if rally is not None else None
        if identity != self._rally_identity:
            if self._rally_identity is not None:
                logger.debug("Rally changed, clearing announcements")
            self.dedup.reset()
            self._rally_identity = identity
