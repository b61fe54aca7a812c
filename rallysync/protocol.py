"""JSON message protocol spoken with the room server."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rallysync.phase import Participant, RallyDescriptor
from rallysync.utils import is_finite_number

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Message types, named as on the wire."""

    STATE_REQUEST = "STATE_REQUEST"
    STATE = "STATE"
    TIME_SYNC_REQUEST = "TIME_SYNC_REQUEST"
    TIME_SYNC_RESPONSE = "TIME_SYNC_RESPONSE"
    PLAYER_ADD = "PLAYER_ADD"
    PLAYER_REMOVE = "PLAYER_REMOVE"
    RALLY_START = "RALLY_START"
    RALLY_END = "RALLY_END"


class ProtocolError(ValueError):
    """A message decoded as JSON but its payload has the wrong shape."""


@dataclass(frozen=True, slots=True)
class RoomState:
    """Authoritative snapshot of a room: roster plus the active rally."""

    players: tuple[Participant, ...] = field(default_factory=tuple)
    rally: RallyDescriptor | None = None

    def find_player(self, player_id: str) -> Participant | None:
        return next((p for p in self.players if p.id == player_id), None)


def encode_message(type_: MessageType, room_id: str, payload: Any = None) -> str:
    """Encode an outbound message."""
    message: dict[str, Any] = {"type": type_.value, "roomId": room_id}
    if payload is not None:
        message["payload"] = payload
    return json.dumps(message)


def decode_message(text: str | bytes) -> dict[str, Any] | None:
    """Decode an inbound message, or return None if it is not a JSON object."""
    try:
        message = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(message, dict):
        return None
    return message


def _parse_player(raw: Any) -> Participant:
    if not isinstance(raw, dict):
        raise ProtocolError(f"Player entry is not an object: {raw!r}")
    player_id = raw.get("id")
    march_ms = raw.get("marchMs")
    if not isinstance(player_id, str) or not is_finite_number(march_ms) or march_ms < 0:
        raise ProtocolError(f"Invalid player entry: {raw!r}")
    return Participant(id=player_id, name=str(raw.get("name", "")), march_ms=int(march_ms))


def _optional_number(raw: dict[str, Any], key: str) -> float | None:
    value = raw.get(key)
    return float(value) if is_finite_number(value) else None


def _parse_rally(raw: Any) -> RallyDescriptor | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ProtocolError(f"Rally is not an object: {raw!r}")
    starter_id = raw.get("starterId")
    launch_at = raw.get("launchAt")
    if not isinstance(starter_id, str) or not is_finite_number(launch_at):
        raise ProtocolError(f"Invalid rally: {raw!r}")
    return RallyDescriptor(
        starter_id=starter_id,
        launch_at=float(launch_at),
        rally_duration_ms=_optional_number(raw, "rallyDurationMs"),
        pre_delay_ms=_optional_number(raw, "preDelayMs") or 0,
        arrival_at=_optional_number(raw, "arrivalAt"),
    )


def parse_state(payload: Any) -> RoomState:
    """Parse a STATE payload.

    Raises:
        ProtocolError: If the snapshot is malformed. Snapshots replace state
            wholesale, so a bad entry rejects the whole message.
    """
    if not isinstance(payload, dict):
        raise ProtocolError(f"STATE payload is not an object: {payload!r}")
    players = payload.get("players", [])
    if not isinstance(players, list):
        raise ProtocolError("STATE players is not a list")
    return RoomState(
        players=tuple(_parse_player(p) for p in players),
        rally=_parse_rally(payload.get("rally")),
    )
