"""Spoken name calls through the platform text-to-speech engine."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Final

import pyttsx3

logger = logging.getLogger(__name__)

_BASE_RATE_WPM: Final[int] = 200
_RATE_FACTOR: Final[float] = 1.05


class VoiceAnnouncer:
    """Speaks "<name>, get ready" without blocking the event loop.

    pyttsx3 engines are not thread-safe and runAndWait() blocks until the
    utterance ends, so the engine lives on a single worker thread and
    utterances are queued there in order. If the engine cannot be created
    (no speech backend installed) every call becomes a no-op.
    """

    def __init__(self) -> None:
        self._executor: ThreadPoolExecutor | None = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="rallysync-tts"
        )
        self._engine: Any = None
        self._unavailable = False

    @property
    def available(self) -> bool:
        return not self._unavailable and self._executor is not None

    def unlock(self) -> Future[Any] | None:
        """Initialize the engine ahead of the first name call."""
        return self._submit(self._ensure_engine)

    def speak_name(self, name: str, *, volume: float = 1.0) -> Future[Any] | None:
        """Queue a name call. Returns the worker future, or None if speech is unavailable."""
        return self.say(f"{name}, get ready", volume=volume)

    def say(self, text: str, *, volume: float = 1.0) -> Future[Any] | None:
        volume = max(0.0, min(1.0, volume))
        return self._submit(self._say_blocking, text, volume)

    async def dispose(self) -> None:
        """Shut the worker thread down after pending utterances."""
        executor, self._executor = self._executor, None
        if executor is None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, executor.shutdown)

    def _submit(self, fn: Any, *args: Any) -> Future[Any] | None:
        if self._unavailable or self._executor is None:
            return None
        return self._executor.submit(fn, *args)

    def _ensure_engine(self) -> Any:
        """Create the engine on the worker thread (blocking)."""
        if self._engine is None and not self._unavailable:
            try:
                engine = pyttsx3.init()
                engine.setProperty("rate", round(_BASE_RATE_WPM * _RATE_FACTOR))
            except (RuntimeError, OSError, ImportError) as err:
                logger.warning("Speech output unavailable: %s", err)
                self._unavailable = True
                return None
            self._engine = engine
        return self._engine

    def _say_blocking(self, text: str, volume: float) -> None:
        engine = self._ensure_engine()
        if engine is None:
            return
        try:
            engine.setProperty("volume", volume)
            engine.say(text)
            engine.runAndWait()
        except RuntimeError as err:
            logger.warning("Failed to speak %r: %s", text, err)
