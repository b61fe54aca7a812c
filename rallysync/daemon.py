"""Watch mode: stay in a room, print countdowns, call names and play cues."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass
from functools import partial
from urllib.parse import urlsplit

from aiohttp import ClientError, ClientSession

from rallysync.audio import (
    AssetFetcher,
    AudioCountdownScheduler,
    directory_asset_fetcher,
    http_asset_fetcher,
)
from rallysync.client import RallyClient
from rallysync.clock_sync import ClockSynchronizer
from rallysync.phase import DerivedView
from rallysync.session import RallySession
from rallysync.settings import ClientSettings
from rallysync.speech import VoiceAnnouncer
from rallysync.utils import create_task, format_ms, wall_clock_ms

logger = logging.getLogger(__name__)

STATUS_INTERVAL_MS = 10_000.0


def http_base_url(server_url: str) -> str:
    """Map a server URL (ws, wss, http, https or bare host) to its http(s) origin."""
    if "://" not in server_url:
        server_url = f"http://{server_url}"
    parts = urlsplit(server_url)
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    return f"{scheme}://{parts.netloc}"


@dataclass
class DaemonConfig:
    """Configuration for watch mode."""

    url: str
    room_id: str
    settings: ClientSettings
    audio_device: int | None = None
    assets: str | None = None


class RallyDaemon:
    """Runs a RallySession with automatic reconnection until interrupted."""

    def __init__(self, config: DaemonConfig) -> None:
        """Initialize the daemon."""
        self._config = config
        self._client: RallyClient | None = None
        self._session: RallySession | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._last_status_key: object = None
        self._last_status_at = 0.0

    def _print_event(self, message: str) -> None:
        """Print an event message."""
        print(message, flush=True)  # noqa: T201

    def _asset_fetcher(self, http: ClientSession) -> AssetFetcher:
        assets = self._config.assets
        if assets is None:
            return http_asset_fetcher(http, http_base_url(self._config.url))
        if assets.startswith(("http://", "https://")):
            return http_asset_fetcher(http, assets)
        return directory_asset_fetcher(assets)

    async def run(self) -> int:
        """Run the daemon."""
        config = self._config
        logger.info("Watching room %s on %s", config.room_id, config.url)

        async with ClientSession() as http:
            self._client = RallyClient(
                config.url, config.room_id, clock=ClockSynchronizer(), session=http
            )
            scheduler = AudioCountdownScheduler.create(
                device=config.audio_device, fetch=self._asset_fetcher(http)
            )
            if not scheduler.available:
                self._print_event("No audio output available, countdowns are silent")
            self._session = RallySession(
                self._client, config.settings, scheduler=scheduler, announcer=VoiceAnnouncer()
            )
            self._session.add_view_listener(self._on_view)

            loop = asyncio.get_running_loop()
            self._shutdown_event = asyncio.Event()

            def signal_handler() -> None:
                logger.debug("Received interrupt signal, shutting down...")
                if self._shutdown_event is not None:
                    self._shutdown_event.set()

            # Register signal handlers
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signal.SIGINT, signal_handler)
                loop.add_signal_handler(signal.SIGTERM, signal_handler)

            try:
                await self._session.start()
                await self._connection_loop()
            finally:
                # Remove signal handlers
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(signal.SIGINT)
                    loop.remove_signal_handler(signal.SIGTERM)
                await self._session.dispose()
                await self._client.disconnect()
                logger.info("Daemon stopped")

        return 0

    def _on_view(self, view: DerivedView | None) -> None:
        """Print the view when it changes shape, and periodically otherwise."""
        assert self._session is not None
        if view is None:
            key: object = None
        else:
            key = (view.phase, view.launch_at, tuple(r.participant_id for r in view.rows))
        now = wall_clock_ms()
        if key == self._last_status_key and now - self._last_status_at < STATUS_INTERVAL_MS:
            return

        self._last_status_key = key
        self._last_status_at = now
        clock = self._session.client.clock
        sync = f"[{self._session.sync_label()}] offset {clock.best_offset_ms:+.0f}ms"
        if clock.best_rtt_ms is not None:
            sync += f", rtt {clock.best_rtt_ms:.0f}ms"
        if view is None:
            players = len(self._session.client.state.players)
            self._print_event(f"{sync}\nNo active rally ({players} players in room)")
        else:
            self._print_event(f"{sync}\n{view.describe()}")

    async def _connection_loop(self) -> None:
        """Run the connection loop with automatic reconnection."""
        assert self._client is not None
        assert self._shutdown_event is not None

        error_backoff = 1.0
        max_backoff = 300.0

        while not self._shutdown_event.is_set():
            try:
                logger.info("Connecting to %s", self._client.url)
                await self._client.connect()
                self._print_event(f"Connected to room {self._client.room_id}")
                error_backoff = 1.0

                # Wait for disconnect or shutdown
                disconnect_event = asyncio.Event()
                self._client.set_disconnect_listener(partial(asyncio.Event.set, disconnect_event))

                shutdown_task = create_task(self._shutdown_event.wait())
                disconnect_task = create_task(disconnect_event.wait())

                done, pending = await asyncio.wait(
                    {shutdown_task, disconnect_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                for task in pending:
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

                self._client.set_disconnect_listener(None)

                if shutdown_task in done:
                    break

                # Connection dropped
                self._print_event(
                    f"Disconnected, reconnecting in {format_ms(error_backoff * 1000)}"
                )
                await self._sleep_unless_shutdown(error_backoff)

            except (TimeoutError, OSError, ClientError) as e:
                logger.warning(
                    "Connection error (%s), retrying in %.0fs",
                    type(e).__name__,
                    error_backoff,
                )
                if await self._sleep_unless_shutdown(error_backoff):
                    break
                error_backoff = min(error_backoff * 2, max_backoff)

            except Exception:
                logger.exception("Unexpected error during connection")
                if await self._sleep_unless_shutdown(error_backoff):
                    break
                error_backoff = min(error_backoff * 2, max_backoff)

    async def _sleep_unless_shutdown(self, duration: float) -> bool:
        """Interruptible sleep. Returns True if shutdown was requested."""
        assert self._shutdown_event is not None
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=duration)
        except TimeoutError:
            return False
        return True
