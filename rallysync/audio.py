"""Countdown audio scheduled on the sound card clock.

Wall-clock timers on the event loop jitter by tens of milliseconds, so cues
are not played "when a timer fires". Instead, the target instant (server time)
is mapped onto the output stream's own clock and the buffer is handed to the
audio callback, which mixes it in at the exact frame where the DAC time of the
block reaches the requested start.

This module also provides device enumeration for listing audio outputs.
"""

from __future__ import annotations

import asyncio
import collections
import functools
import io
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING, Final, Protocol

import numpy as np

from rallysync.utils import create_task

if TYPE_CHECKING:
    from aiohttp import ClientSession

logger = logging.getLogger(__name__)

COUNTDOWN_FILES: Final[tuple[str, ...]] = ("5", "4", "3", "2", "1")
"""Numbered cue assets, played n seconds before the target."""
GO_FILE: Final[str] = "AirHorn"
"""Asset played at the target instant."""
COUNTDOWN_EXT: Final[str] = "ogg"
GO_GAIN_FACTOR: Final[float] = 0.6

SCHEDULE_GUARD_S: Final[float] = 0.02
"""Cues closer than this to the audio clock's current time are skipped."""

# Synthesized fallback tones
_COUNT_FREQ_HZ: Final[float] = 720.0
_GO_FREQ_HZ: Final[float] = 1100.0
_TONE_GAIN: Final[float] = 0.065
_ATTACK_S: Final[float] = 0.006
_TONE_TAIL_S: Final[float] = 0.03
_ENVELOPE_FLOOR: Final[float] = 0.0001

AssetFetcher = Callable[[str], Awaitable[bytes]]
"""Returns the encoded bytes of a named countdown asset."""


@dataclass(slots=True)
class AudioDevice:
    """Represents an audio output device.

    Attributes:
        index: Device index used for selection.
        name: Human-readable device name.
        output_channels: Number of output channels supported.
        sample_rate: Default sample rate in Hz.
        is_default: Whether this is the system default output device.
    """

    index: int
    name: str
    output_channels: int
    sample_rate: float
    is_default: bool


def _load_sounddevice() -> ModuleType | None:
    """Import sounddevice, or return None when PortAudio is not installed."""
    try:
        import sounddevice  # noqa: PLC0415
    except OSError as err:
        logger.warning("Audio output unavailable: %s", err)
        return None
    return sounddevice


def query_devices() -> list[AudioDevice]:
    """Query all available audio output devices.

    Returns:
        List of AudioDevice objects for devices with output channels.
    """
    sounddevice = _load_sounddevice()
    if sounddevice is None:
        return []

    devices = sounddevice.query_devices()
    default_output = int(sounddevice.default.device[1])

    result: list[AudioDevice] = []
    for i in range(len(devices)):
        dev = devices[i]
        if dev["max_output_channels"] > 0:
            result.append(
                AudioDevice(
                    index=i,
                    name=str(dev["name"]),
                    output_channels=int(dev["max_output_channels"]),
                    sample_rate=float(dev["default_samplerate"]),
                    is_default=(i == default_output),
                )
            )
    return result


class AudioOutput(Protocol):
    """An output with its own clock that accepts buffers scheduled on it."""

    @property
    def sample_rate(self) -> int: ...

    @property
    def current_time(self) -> float:
        """Current time of the output clock, in seconds."""
        ...

    def play(self, samples: np.ndarray, *, at: float, gain: float = 1.0) -> None:
        """Queue mono float32 samples to start at the given output-clock time."""
        ...

    def close(self) -> None: ...


class AudioTimeInfo(Protocol):
    """Timing information passed to the sounddevice callback."""

    outputBufferDacTime: float  # noqa: N815
    """DAC time when the output buffer will be played (in seconds)."""
    currentTime: float  # noqa: N815


@dataclass(slots=True)
class _ScheduledVoice:
    """A buffer waiting for, or in the middle of, playback."""

    start_time: float
    samples: np.ndarray
    cursor: int = 0


class SoundDeviceOutput:
    """Mono float32 output stream that mixes buffers at scheduled DAC times.

    play() runs on the event loop thread and only appends to a deque; the
    audio callback drains it on the PortAudio thread. Scheduled buffers are
    never modified or cancelled once queued.
    """

    _BLOCKSIZE: Final[int] = 512
    """Audio block size (~12ms at 44.1kHz)."""

    def __init__(self, sounddevice: ModuleType, device: int | None = None) -> None:
        """Open and start the output stream.

        Args:
            sounddevice: The imported sounddevice module.
            device: Output device index, or None for the system default.
        """
        self._pending: collections.deque[_ScheduledVoice] = collections.deque()
        self._active: list[_ScheduledVoice] = []
        self._stream = sounddevice.OutputStream(
            channels=1,
            dtype="float32",
            blocksize=self._BLOCKSIZE,
            callback=self._audio_callback,
            latency="low",
            device=device,
        )
        self._sample_rate = int(self._stream.samplerate)
        self._stream.start()
        logger.info(
            "Audio output started: device=%s, samplerate=%d, blocksize=%d",
            device if device is not None else "default",
            self._sample_rate,
            self._BLOCKSIZE,
        )

    @classmethod
    def open(cls, device: int | None = None) -> SoundDeviceOutput | None:
        """Open an output stream, or return None if the platform has no audio output."""
        sounddevice = _load_sounddevice()
        if sounddevice is None:
            return None
        try:
            return cls(sounddevice, device)
        except (sounddevice.PortAudioError, ValueError, OSError) as err:
            logger.warning("Unable to open audio output %s: %s", device, err)
            return None

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def current_time(self) -> float:
        return float(self._stream.time)

    def play(self, samples: np.ndarray, *, at: float, gain: float = 1.0) -> None:
        self._pending.append(
            _ScheduledVoice(start_time=at, samples=np.asarray(samples * gain, dtype=np.float32))
        )

    def close(self) -> None:
        self._stream.stop()
        self._stream.close()
        self._pending.clear()

    def _audio_callback(
        self,
        outdata: np.ndarray,
        frames: int,
        time: AudioTimeInfo,
        status: object,
    ) -> None:
        """Mix every due voice into the block starting at its DAC time."""
        if status:
            logger.debug("Audio callback status: %s", status)

        while self._pending:
            self._active.append(self._pending.popleft())

        out = outdata[:, 0]
        out.fill(0.0)
        if not self._active:
            return

        block_start = time.outputBufferDacTime or time.currentTime
        still_active: list[_ScheduledVoice] = []
        for voice in self._active:
            if voice.cursor == 0:
                # Late voices start right away
                dst = max(0, round((voice.start_time - block_start) * self._sample_rate))
            else:
                dst = 0
            if dst >= frames:
                still_active.append(voice)
                continue

            count = min(frames - dst, len(voice.samples) - voice.cursor)
            out[dst : dst + count] += voice.samples[voice.cursor : voice.cursor + count]
            voice.cursor += count
            if voice.cursor < len(voice.samples):
                still_active.append(voice)

        self._active = still_active
        np.clip(out, -1.0, 1.0, out=out)


@functools.lru_cache(maxsize=32)
def render_tone(freq: float, duration: float, gain: float, sample_rate: int) -> np.ndarray:
    """Render a short sine beep with a linear attack and exponential decay.

    The envelope rises from a near-silent floor to gain over 6 ms, decays
    exponentially back to the floor at duration, and holds there for a 30 ms
    tail. The returned array is read-only and shared between calls.
    """
    total = round((duration + _TONE_TAIL_S) * sample_rate)
    t = np.arange(total, dtype=np.float64) / sample_rate
    attack_end = min(_ATTACK_S, duration)

    envelope = np.full(total, _ENVELOPE_FLOOR)
    attack = t < attack_end
    envelope[attack] = _ENVELOPE_FLOOR + (gain - _ENVELOPE_FLOOR) * (t[attack] / attack_end)
    decay = (t >= attack_end) & (t < duration)
    if duration > attack_end:
        progress = (t[decay] - attack_end) / (duration - attack_end)
        envelope[decay] = gain * (_ENVELOPE_FLOOR / gain) ** progress

    tone = (np.sin(2 * np.pi * freq * t) * envelope).astype(np.float32)
    tone.setflags(write=False)
    return tone


def decode_asset(data: bytes, sample_rate: int) -> np.ndarray:
    """Decode an encoded sound file into mono float32 at the given sample rate."""
    import soundfile  # noqa: PLC0415

    samples, file_rate = soundfile.read(io.BytesIO(data), dtype="float32", always_2d=True)
    mono = samples.mean(axis=1)
    if file_rate != sample_rate and len(mono) > 1:
        duration = len(mono) / file_rate
        target_len = max(1, round(duration * sample_rate))
        source_t = np.arange(len(mono)) / file_rate
        target_t = np.arange(target_len) / sample_rate
        mono = np.interp(target_t, source_t, mono)
    return np.asarray(mono, dtype=np.float32)


def http_asset_fetcher(session: ClientSession, base_url: str) -> AssetFetcher:
    """Fetch assets from {base_url}/countdown/<name>.ogg."""
    base = base_url.rstrip("/")

    async def fetch(name: str) -> bytes:
        async with session.get(f"{base}/countdown/{name}.{COUNTDOWN_EXT}") as resp:
            resp.raise_for_status()
            return await resp.read()

    return fetch


def directory_asset_fetcher(directory: str | Path) -> AssetFetcher:
    """Read assets from <directory>/<name>.ogg in an executor."""
    root = Path(directory)

    async def fetch(name: str) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, (root / f"{name}.{COUNTDOWN_EXT}").read_bytes)

    return fetch


@dataclass(frozen=True, slots=True)
class CountdownAssets:
    """Decoded countdown buffers, ready to schedule."""

    numbers: tuple[np.ndarray, ...]
    """Buffers for COUNTDOWN_FILES, same order."""
    go: np.ndarray


def _decode_all(blobs: Sequence[bytes], sample_rate: int) -> CountdownAssets:
    buffers = [decode_asset(blob, sample_rate) for blob in blobs]
    return CountdownAssets(numbers=tuple(buffers[: len(COUNTDOWN_FILES)]), go=buffers[-1])


class AudioCountdownScheduler:
    """Schedules countdown cues on an audio output clock.

    One instance per session. Without an output every call is a no-op.
    """

    def __init__(self, output: AudioOutput | None, fetch: AssetFetcher | None = None) -> None:
        """Initialize the scheduler.

        Args:
            output: Audio output to schedule on, or None when the platform has none.
            fetch: Loader for countdown assets; None means synthesized tones only.
        """
        self._output = output
        self._fetch = fetch
        self._assets: CountdownAssets | None = None
        self._load_task: asyncio.Task[CountdownAssets | None] | None = None

    @classmethod
    def create(
        cls, *, device: int | None = None, fetch: AssetFetcher | None = None
    ) -> AudioCountdownScheduler:
        """Open the sound card output (if any) and build a scheduler on it."""
        return cls(SoundDeviceOutput.open(device), fetch)

    @property
    def available(self) -> bool:
        return self._output is not None

    @property
    def assets(self) -> CountdownAssets | None:
        return self._assets

    def beep_at(
        self,
        at: float,
        *,
        freq: float = 800.0,
        duration: float = 0.085,
        gain: float = 0.06,
    ) -> None:
        """Schedule a synthesized beep at an output-clock instant."""
        output = self._output
        if output is None or gain <= 0:
            return
        output.play(render_tone(freq, duration, gain, output.sample_rate), at=at)

    def unlock(self) -> None:
        """Play a near-silent tone and start loading assets.

        Opening the stream and pushing a first buffer through it warms up the
        device so the first real cue is not delayed.
        """
        output = self._output
        if output is None:
            return
        self.beep_at(output.current_time + 0.01, freq=30.0, duration=0.02, gain=0.000001)
        self._ensure_load_task()

    async def preload_assets(self) -> CountdownAssets | None:
        """Load and decode countdown assets once.

        Safe to call repeatedly; concurrent callers share the same load.
        Never raises: a failed load returns None and the session keeps using
        synthesized tones.
        """
        task = self._ensure_load_task()
        if task is None:
            return None
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # The load was cancelled by dispose(), not the caller
            return None

    def _ensure_load_task(self) -> asyncio.Task[CountdownAssets | None] | None:
        if self._output is None or self._fetch is None:
            return None
        if self._load_task is None:
            self._load_task = create_task(
                self._load_assets(self._fetch, self._output.sample_rate),
                name="countdown-preload",
                eager_start=False,
            )
        return self._load_task

    async def _load_assets(self, fetch: AssetFetcher, sample_rate: int) -> CountdownAssets | None:
        names = [*COUNTDOWN_FILES, GO_FILE]
        try:
            blobs = await asyncio.gather(*(fetch(name) for name in names))
            loop = asyncio.get_running_loop()
            assets = await loop.run_in_executor(
                None, functools.partial(_decode_all, blobs, sample_rate)
            )
        except Exception as err:
            logger.warning("Failed to preload countdown sounds: %s", err)
            self._assets = None
            return None

        self._assets = assets
        logger.debug("Loaded %d countdown sounds", len(names))
        return assets

    def schedule_countdown(
        self, target_at: float, corrected_now: float, *, gain_factor: float = 1.0
    ) -> None:
        """Schedule "5, 4, 3, 2, 1, go" so that go lands on target_at.

        Args:
            target_at: Target instant in server time (ms).
            corrected_now: Current server-corrected time (ms).
            gain_factor: Volume scale, 0.0-1.0.
        """
        output = self._output
        if output is None:
            return

        try:
            now = output.current_time
            seconds_until_target = max(0.0, (target_at - corrected_now) / 1000)
            base = now + seconds_until_target
            earliest = now + SCHEDULE_GUARD_S
            assets = self._assets

            for i, name in enumerate(COUNTDOWN_FILES):
                at = base - int(name)
                if at < earliest:
                    continue
                if assets is not None:
                    output.play(assets.numbers[i], at=at, gain=gain_factor)
                else:
                    self.beep_at(
                        at, freq=_COUNT_FREQ_HZ, duration=0.085, gain=_TONE_GAIN * gain_factor
                    )

            if base >= earliest:
                if assets is not None:
                    output.play(assets.go, at=base, gain=gain_factor * GO_GAIN_FACTOR)
                else:
                    self.beep_at(
                        base, freq=_GO_FREQ_HZ, duration=0.12, gain=_TONE_GAIN * 1.1 * gain_factor
                    )
        except Exception:
            logger.exception("Failed to schedule countdown")

    async def dispose(self) -> None:
        """Stop loading, close the output and release resources."""
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
            await asyncio.gather(self._load_task, return_exceptions=True)
        self._load_task = None
        output, self._output = self._output, None
        if output is not None:
            output.close()
