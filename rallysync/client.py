"""Websocket client for a rally room."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable
from typing import Any, Final
from urllib.parse import quote, urlsplit

from aiohttp import ClientError, ClientSession, ClientWebSocketResponse, WSMsgType

from rallysync.clock_sync import (
    SYNC_BURST_SPACING_S,
    SYNC_INTERVAL_S,
    SYNC_SAMPLE_COUNT,
    ClockSynchronizer,
)
from rallysync.protocol import (
    MessageType,
    ProtocolError,
    RoomState,
    decode_message,
    encode_message,
    parse_state,
)
from rallysync.utils import RepeatingTask, create_task, is_finite_number, wall_clock_ms

logger = logging.getLogger(__name__)

MAX_MARCH_SECONDS: Final[int] = 24 * 60 * 60

StateListener = Callable[[RoomState], None]


def build_ws_url(server_url: str, room_id: str) -> str:
    """Build the room websocket URL from a server base URL.

    http(s) URLs are mapped to ws(s); a bare host:port is treated as ws.
    """
    if "://" not in server_url:
        server_url = f"ws://{server_url}"
    parts = urlsplit(server_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/")
    if not path.endswith("/ws"):
        path = f"{path}/ws"
    return f"{scheme}://{parts.netloc}{path}?instance_id={quote(room_id, safe='')}"


class RallyClient:
    """Connection to one room on the rally server.

    Mirrors the room state pushed by the server, keeps the clock
    synchronizer fed with round-trip samples, and sends roster and rally
    commands. All handlers run on the event loop, one at a time.
    """

    def __init__(
        self,
        server_url: str,
        room_id: str,
        *,
        clock: ClockSynchronizer | None = None,
        session: ClientSession | None = None,
        wall_clock: Callable[[], float] = wall_clock_ms,
    ) -> None:
        """Initialize the client.

        Args:
            server_url: Base URL of the rally server.
            room_id: Room to join.
            clock: Synchronizer to feed; a new one is created if omitted.
            session: aiohttp session to use; one is created and owned if omitted.
            wall_clock: Local clock in epoch milliseconds.
        """
        self._server_url = server_url
        self._room_id = room_id
        self.clock = clock if clock is not None else ClockSynchronizer()
        self._session = session
        self._owns_session = session is None
        self._wall_clock = wall_clock

        self._ws: ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._sync_task: RepeatingTask | None = None
        self._burst_tasks: set[asyncio.Task[None]] = set()

        self._state = RoomState()
        self._state_received = asyncio.Event()
        self._state_listeners: list[StateListener] = []
        self._disconnect_listener: Callable[[], None] | None = None

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def url(self) -> str:
        return build_ws_url(self._server_url, self._room_id)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def state(self) -> RoomState:
        return self._state

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener for state snapshots.

        Returns:
            Function that unregisters the listener.
        """
        self._state_listeners.append(listener)
        return lambda: self._state_listeners.remove(listener)

    def set_disconnect_listener(self, listener: Callable[[], None] | None) -> None:
        """Set the callback invoked when the connection drops."""
        self._disconnect_listener = listener

    async def connect(self) -> None:
        """Open the websocket, request state and start clock synchronization."""
        if self.connected:
            logger.debug("Already connected")
            return

        if self._session is None:
            self._session = ClientSession()
            self._owns_session = True

        url = self.url
        logger.debug("Connecting to %s", url)
        self._ws = await self._session.ws_connect(url, heartbeat=30)
        self._state_received.clear()
        self._reader_task = create_task(self._reader_loop(self._ws), name="rally-reader")

        await self._send(MessageType.STATE_REQUEST)
        self.resync()
        self._sync_task = RepeatingTask(SYNC_INTERVAL_S, self.resync, name="time-sync")
        self._sync_task.start()
        logger.info("Joined room %s", self._room_id)

    async def disconnect(self) -> None:
        """Stop synchronization and close the connection."""
        await self._stop_sync()

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def wait_for_state(self, timeout: float = 10.0) -> RoomState:
        """Wait until the first snapshot after connect() arrives."""
        await asyncio.wait_for(self._state_received.wait(), timeout=timeout)
        return self._state

    def resync(self) -> None:
        """Start a burst of time sync requests.

        Called on connect, periodically, and when the app regains the foreground.
        """
        if not self.connected:
            return
        task = create_task(self._sync_burst(), name="time-sync-burst", eager_start=False)
        self._burst_tasks.add(task)
        task.add_done_callback(self._burst_tasks.discard)

    async def request_time_sync(self) -> None:
        """Send one TIME_SYNC_REQUEST stamped with the local clock."""
        await self._send(MessageType.TIME_SYNC_REQUEST, {"t0": self._wall_clock()})

    async def add_player(
        self, name: str, march_seconds: float, *, player_id: str | None = None
    ) -> str:
        """Add a participant to the room.

        Returns:
            The participant id.

        Raises:
            ValueError: If the name is empty or the march time is out of range.
        """
        name = name.strip()
        if not name:
            raise ValueError("Player name must not be empty")
        if not is_finite_number(march_seconds) or not 0 < march_seconds <= MAX_MARCH_SECONDS:
            raise ValueError(
                f"March time must be between 0 and {MAX_MARCH_SECONDS} seconds, got {march_seconds}"
            )
        player_id = player_id or str(uuid.uuid4())
        await self._send(
            MessageType.PLAYER_ADD,
            {"id": player_id, "name": name, "marchMs": round(march_seconds * 1000)},
        )
        return player_id

    async def remove_player(self, player_id: str) -> None:
        await self._send(MessageType.PLAYER_REMOVE, player_id)

    async def start_rally(
        self, starter_id: str, *, rally_minutes: float, pre_delay_seconds: float = 10
    ) -> None:
        """Ask the server to start a rally anchored on starter_id.

        Raises:
            ValueError: If the starter is not on the roster or the duration is invalid.
        """
        if self._state.find_player(starter_id) is None:
            raise ValueError(f"Unknown starter: {starter_id}")
        if not is_finite_number(rally_minutes) or rally_minutes <= 0:
            raise ValueError(f"Rally duration must be positive, got {rally_minutes}")
        await self._send(
            MessageType.RALLY_START,
            {
                "starterId": starter_id,
                "rallyDurationMs": round(rally_minutes * 60 * 1000),
                "preDelayMs": round(max(0, pre_delay_seconds) * 1000),
            },
        )

    async def end_rally(self) -> None:
        await self._send(MessageType.RALLY_END)

    def handle_message(self, text: str | bytes) -> None:
        """Apply one inbound message. Malformed messages are dropped."""
        message = decode_message(text)
        if message is None:
            logger.debug("Dropping malformed message")
            return

        msg_type = message.get("type")
        payload = message.get("payload")
        if msg_type == MessageType.STATE.value:
            self._handle_state(payload)
        elif msg_type == MessageType.TIME_SYNC_RESPONSE.value:
            self._handle_time_sync_response(payload)
        else:
            logger.debug("Ignoring message type %r", msg_type)

    def _handle_state(self, payload: Any) -> None:
        try:
            state = parse_state(payload)
        except ProtocolError as err:
            logger.debug("Dropping malformed state: %s", err)
            return

        self._state = state
        self._state_received.set()
        for listener in list(self._state_listeners):
            listener(state)

    def _handle_time_sync_response(self, payload: Any) -> None:
        t3 = self._wall_clock()
        if not isinstance(payload, dict):
            return
        self.clock.process_response(payload.get("t0"), payload.get("t1"), payload.get("t2"), t3)

    async def _send(self, type_: MessageType, payload: Any = None) -> None:
        if self._ws is None or self._ws.closed:
            raise ConnectionError("Not connected to the rally server")
        await self._ws.send_str(encode_message(type_, self._room_id, payload))

    async def _sync_burst(self) -> None:
        for i in range(SYNC_SAMPLE_COUNT):
            if i:
                await asyncio.sleep(SYNC_BURST_SPACING_S)
            if not self.connected:
                return
            try:
                await self.request_time_sync()
            except (ConnectionError, ClientError) as err:
                logger.debug("Time sync request failed: %s", err)
                return

    async def _stop_sync(self) -> None:
        if self._sync_task is not None:
            await self._sync_task.stop()
            self._sync_task = None
        for task in list(self._burst_tasks):
            task.cancel()
        if self._burst_tasks:
            await asyncio.gather(*self._burst_tasks, return_exceptions=True)
        self._burst_tasks.clear()

    async def _reader_loop(self, ws: ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    self.handle_message(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Websocket error: %s", ws.exception())
                    break
        finally:
            if self._ws is ws:
                # Connection dropped on the server side
                logger.info("Disconnected from room %s", self._room_id)
                await self._stop_sync()
                self._ws = None
                if self._disconnect_listener is not None:
                    self._disconnect_listener()
