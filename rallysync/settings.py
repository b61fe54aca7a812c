"""Settings persistence for rallysync.

Local preferences (volumes, which participants to call out, last room) are
loaded from disk and saved with debouncing.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar

from rallysync.utils import is_finite_number

logger = logging.getLogger(__name__)

# Debounce delay for saving settings
SAVE_DEBOUNCE_SECONDS = 5.0

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "rallysync"


@dataclass
class ClientSettings:
    """Local preferences for a rallysync session.

    Changes are debounced and saved after a few seconds of inactivity,
    or immediately on flush().
    """

    beep_level: int = 70
    tts_level: int = 80
    selected_ids: list[str] = field(default_factory=list)
    tts_enabled: bool = True
    tts_rally_calls: bool = True
    tts_march_calls: bool = False
    rally_minutes: float = 5
    pre_delay_seconds: float = 10
    name: str | None = None
    last_server_url: str | None = None
    last_room_id: str | None = None
    audio_device: int | None = None
    assets: str | None = None
    log_level: str | None = None

    # Internal state (not serialized)
    _settings_file: Path | None = field(default=None, repr=False, compare=False)
    _debounce_save_handle: asyncio.TimerHandle | None = field(
        default=None, repr=False, compare=False
    )

    # Fields to exclude from serialization
    _internal_fields: ClassVar[set[str]] = {"_settings_file", "_debounce_save_handle"}

    @property
    def beep_gain(self) -> float:
        """Countdown volume as a 0.0-1.0 factor."""
        return max(0.0, min(1.0, self.beep_level / 100))

    @property
    def tts_volume(self) -> float:
        """Speech volume as a 0.0-1.0 factor."""
        return max(0.0, min(1.0, self.tts_level / 100))

    @property
    def default_rally_duration_ms(self) -> float:
        return self.rally_minutes * 60 * 1000

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a dictionary for serialization."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._internal_fields
        }

    def update(
        self,
        *,
        beep_level: int | None = None,
        tts_level: int | None = None,
        selected_ids: list[str] | None = None,
        tts_enabled: bool | None = None,
        tts_rally_calls: bool | None = None,
        tts_march_calls: bool | None = None,
        rally_minutes: float | None = None,
        pre_delay_seconds: float | None = None,
        name: str | None = None,
        last_server_url: str | None = None,
        last_room_id: str | None = None,
        audio_device: int | None = None,
        assets: str | None = None,
        log_level: str | None = None,
    ) -> None:
        """Update settings fields. Only changed fields trigger a save."""
        # Levels are clamped to 0-100
        if beep_level is not None:
            beep_level = max(0, min(100, beep_level))
        if tts_level is not None:
            tts_level = max(0, min(100, tts_level))

        changed = self._update_fields(
            {
                "beep_level": beep_level,
                "tts_level": tts_level,
                "selected_ids": list(selected_ids) if selected_ids is not None else None,
                "tts_enabled": tts_enabled,
                "tts_rally_calls": tts_rally_calls,
                "tts_march_calls": tts_march_calls,
                "rally_minutes": rally_minutes,
                "pre_delay_seconds": pre_delay_seconds,
                "name": name,
                "last_server_url": last_server_url,
                "last_room_id": last_room_id,
                "audio_device": audio_device,
                "assets": assets,
                "log_level": log_level,
            }
        )

        if changed:
            self._schedule_save()

    def toggle_selected(self, player_id: str) -> None:
        """Opt a participant in or out of local name calls."""
        selected = list(self.selected_ids)
        if player_id in selected:
            selected.remove(player_id)
        else:
            selected.append(player_id)
        self.update(selected_ids=selected)

    def _update_fields(self, updates: dict[str, Any]) -> bool:
        """Update fields and return whether any changed."""
        changed = False
        for field_name, value in updates.items():
            if value is not None and getattr(self, field_name) != value:
                setattr(self, field_name, value)
                changed = True
        return changed

    async def load(self) -> None:
        """Load settings from disk."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._load)

    async def flush(self) -> None:
        """Immediately save any pending changes to disk."""
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()
            self._debounce_save_handle = None
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._save)

    def _schedule_save(self) -> None:
        """Schedule a debounced save operation."""
        if self._debounce_save_handle is not None:
            self._debounce_save_handle.cancel()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (e.g. CLI argument handling): save right away
            self._save()
            return
        self._debounce_save_handle = loop.call_later(
            SAVE_DEBOUNCE_SECONDS, self._debounced_save, loop
        )

    def _debounced_save(self, loop: asyncio.AbstractEventLoop) -> None:
        """Called by the timer to save settings in executor."""
        self._debounce_save_handle = None
        loop.run_in_executor(None, self._save)

    def _load(self) -> None:
        """Load settings from the settings file (blocking I/O)."""
        if self._settings_file is None or not self._settings_file.exists():
            logger.debug("Settings file does not exist: %s", self._settings_file)
            return

        try:
            data = json.loads(self._settings_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load settings from %s: %s", self._settings_file, e)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed settings file %s", self._settings_file)
            return

        defaults = ClientSettings()
        for f in fields(self):
            if f.name in self._internal_fields:
                continue
            default = getattr(defaults, f.name)
            value = data.get(f.name, default)
            if not _valid_value(f.name, value):
                logger.warning(
                    "Ignoring invalid %s=%r in %s", f.name, value, self._settings_file
                )
                value = default
            elif f.name == "selected_ids":
                value = list(value)
            setattr(self, f.name, value)
        self.beep_level = max(0, min(100, self.beep_level))
        self.tts_level = max(0, min(100, self.tts_level))
        logger.info(
            "Loaded settings from %s: beep=%d%%, tts=%d%%, selected=%d",
            self._settings_file,
            self.beep_level,
            self.tts_level,
            len(self.selected_ids),
        )

    def _save(self) -> None:
        """Save settings to the settings file (blocking I/O)."""
        if self._settings_file is None:
            return
        try:
            self._settings_file.parent.mkdir(parents=True, exist_ok=True)
            self._settings_file.write_text(json.dumps(self.to_dict(), indent=2) + "\n")
            logger.debug("Saved settings to %s", self._settings_file)
        except OSError as e:
            logger.warning("Failed to save settings to %s: %s", self._settings_file, e)


def _valid_value(name: str, value: Any) -> bool:
    """Check a loaded value against the type its field expects."""
    if name in ("beep_level", "tts_level"):
        return isinstance(value, int) and not isinstance(value, bool)
    if name in ("rally_minutes", "pre_delay_seconds"):
        if not is_finite_number(value) or value < 0:
            return False
        return name != "rally_minutes" or value > 0
    if name == "selected_ids":
        return isinstance(value, list) and all(isinstance(v, str) for v in value)
    if name.startswith("tts_"):
        return isinstance(value, bool)
    if name == "audio_device":
        return value is None or (isinstance(value, int) and not isinstance(value, bool))
    return value is None or isinstance(value, str)


async def get_client_settings(config_dir: str | None = None) -> ClientSettings:
    """Create and load client settings.

    Args:
        config_dir: Optional directory to store settings. Defaults to ~/.config/rallysync.

    Returns:
        ClientSettings instance with settings loaded from disk.
    """
    config_path = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
    settings = ClientSettings(_settings_file=config_path / "settings.json")
    await settings.load()
    return settings
