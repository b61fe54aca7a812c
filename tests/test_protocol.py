import json

import pytest

from rallysync.phase import Participant, RallyDescriptor
from rallysync.protocol import (
    MessageType,
    ProtocolError,
    decode_message,
    encode_message,
    parse_state,
)


def test_encode_message_omits_missing_payload():
    assert json.loads(encode_message(MessageType.STATE_REQUEST, "room-1")) == {
        "type": "STATE_REQUEST",
        "roomId": "room-1",
    }
    assert json.loads(encode_message(MessageType.PLAYER_REMOVE, "room-1", "p1")) == {
        "type": "PLAYER_REMOVE",
        "roomId": "room-1",
        "payload": "p1",
    }


@pytest.mark.parametrize("text", ["", "{", "not json", "[1, 2]", "42", b"\xff\xfe"])
def test_decode_message_rejects_non_objects(text):
    assert decode_message(text) is None


def test_parse_state():
    state = parse_state(
        {
            "players": [
                {"id": "A", "name": "Alice", "marchMs": 60000},
                {"id": "B", "name": "Bob", "marchMs": 30000.0},
            ],
            "rally": {
                "starterId": "A",
                "launchAt": 1_700_000_000_000,
                "rallyDurationMs": 300000,
                "preDelayMs": 10000,
            },
        }
    )

    assert state.players == (
        Participant("A", "Alice", 60000),
        Participant("B", "Bob", 30000),
    )
    assert state.rally == RallyDescriptor(
        starter_id="A",
        launch_at=1_700_000_000_000,
        rally_duration_ms=300000,
        pre_delay_ms=10000,
    )
    assert state.find_player("B").name == "Bob"
    assert state.find_player("Z") is None


def test_parse_state_without_rally():
    state = parse_state({"players": [], "rally": None})
    assert state.players == ()
    assert state.rally is None


def test_parse_state_drops_non_finite_optional_fields():
    state = parse_state(
        {
            "players": [{"id": "A", "name": "Alice", "marchMs": 1000}],
            "rally": {
                "starterId": "A",
                "launchAt": 5,
                "rallyDurationMs": "soon",
                "arrivalAt": None,
            },
        }
    )
    assert state.rally.rally_duration_ms is None
    assert state.rally.arrival_at is None
    assert state.rally.pre_delay_ms == 0


@pytest.mark.parametrize(
    "payload",
    [
        None,
        [],
        {"players": "A"},
        {"players": [{"id": "A", "name": "Alice"}]},
        {"players": [{"id": "A", "name": "Alice", "marchMs": -1}]},
        {"players": [{"id": 7, "name": "Alice", "marchMs": 10}]},
        {"players": ["Alice"]},
        {"players": [], "rally": {"starterId": "A"}},
        {"players": [], "rally": "soon"},
    ],
)
def test_parse_state_rejects_malformed(payload):
    with pytest.raises(ProtocolError):
        parse_state(payload)
