import json

import pytest

from rallysync.settings import ClientSettings, get_client_settings


def test_levels_are_clamped():
    settings = ClientSettings()
    settings.update(beep_level=150, tts_level=-20)
    assert settings.beep_level == 100
    assert settings.tts_level == 0
    assert settings.beep_gain == 1.0
    assert settings.tts_volume == 0.0


def test_default_rally_duration():
    settings = ClientSettings(rally_minutes=2.5)
    assert settings.default_rally_duration_ms == 150_000


def test_update_without_loop_saves_immediately(tmp_path):
    path = tmp_path / "settings.json"
    settings = ClientSettings(_settings_file=path)

    settings.update(beep_level=40, last_room_id="room-9")

    data = json.loads(path.read_text())
    assert data["beep_level"] == 40
    assert data["last_room_id"] == "room-9"
    assert "_settings_file" not in data


def test_unchanged_update_does_not_save(tmp_path):
    path = tmp_path / "settings.json"
    settings = ClientSettings(_settings_file=path)
    settings.update(beep_level=70)
    assert not path.exists()


def test_toggle_selected(tmp_path):
    settings = ClientSettings(_settings_file=tmp_path / "settings.json")
    settings.toggle_selected("A")
    settings.toggle_selected("B")
    settings.toggle_selected("A")
    assert settings.selected_ids == ["B"]


@pytest.mark.asyncio
async def test_flush_writes_debounced_changes(tmp_path):
    path = tmp_path / "settings.json"
    settings = ClientSettings(_settings_file=path)

    settings.update(tts_enabled=False, selected_ids=["A", "B"])
    # Still waiting for the debounce timer
    assert not path.exists()

    await settings.flush()

    data = json.loads(path.read_text())
    assert data["tts_enabled"] is False
    assert data["selected_ids"] == ["A", "B"]


@pytest.mark.asyncio
async def test_load_fills_missing_keys_with_defaults(tmp_path):
    (tmp_path / "settings.json").write_text(json.dumps({"tts_level": 20, "name": "Scout"}))

    settings = await get_client_settings(str(tmp_path))

    assert settings.tts_level == 20
    assert settings.name == "Scout"
    assert settings.beep_level == 70
    assert settings.tts_rally_calls is True


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["{broken", "[1, 2, 3]"])
async def test_load_ignores_malformed_file(tmp_path, content):
    (tmp_path / "settings.json").write_text(content)

    settings = await get_client_settings(str(tmp_path))

    assert settings == ClientSettings()


@pytest.mark.asyncio
async def test_missing_file_uses_defaults(tmp_path):
    settings = await get_client_settings(str(tmp_path / "nowhere"))
    assert settings.beep_level == 70
    assert settings.selected_ids == []


@pytest.mark.asyncio
async def test_load_replaces_wrong_typed_values_with_defaults(tmp_path):
    (tmp_path / "settings.json").write_text(
        json.dumps(
            {
                "selected_ids": None,
                "beep_level": "loud",
                "tts_level": 30,
                "rally_minutes": "five",
                "pre_delay_seconds": -4,
                "tts_enabled": "yes",
                "audio_device": True,
                "name": 12,
            }
        )
    )

    settings = await get_client_settings(str(tmp_path))

    assert settings.selected_ids == []
    assert settings.beep_level == 70
    assert settings.tts_level == 30
    assert settings.rally_minutes == 5
    assert settings.pre_delay_seconds == 10
    assert settings.tts_enabled is True
    assert settings.audio_device is None
    assert settings.name is None
    assert settings.beep_gain == 0.7
    assert settings.default_rally_duration_ms == 300_000


@pytest.mark.asyncio
async def test_load_clamps_levels(tmp_path):
    (tmp_path / "settings.json").write_text(json.dumps({"beep_level": 400, "tts_level": -3}))

    settings = await get_client_settings(str(tmp_path))

    assert settings.beep_level == 100
    assert settings.tts_level == 0
