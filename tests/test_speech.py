import pytest

from rallysync import speech
from rallysync.speech import VoiceAnnouncer


class FakeEngine:
    def __init__(self):
        self.properties = {}
        self.said = []
        self.runs = 0

    def setProperty(self, name, value):  # noqa: N802
        self.properties[name] = value

    def say(self, text):
        self.said.append(text)

    def runAndWait(self):  # noqa: N802
        self.runs += 1


@pytest.mark.asyncio
async def test_speak_name_runs_on_worker(monkeypatch):
    engine = FakeEngine()
    monkeypatch.setattr(speech.pyttsx3, "init", lambda: engine)
    announcer = VoiceAnnouncer()

    announcer.unlock().result(timeout=5)
    announcer.speak_name("Alice", volume=1.7).result(timeout=5)

    assert engine.said == ["Alice, get ready"]
    assert engine.properties == {"rate": 210, "volume": 1.0}
    assert engine.runs == 1
    await announcer.dispose()
    assert announcer.speak_name("Bob") is None


@pytest.mark.asyncio
async def test_missing_speech_backend_disables_announcer(monkeypatch):
    def broken_init():
        raise RuntimeError("no espeak")

    monkeypatch.setattr(speech.pyttsx3, "init", broken_init)
    announcer = VoiceAnnouncer()

    assert announcer.speak_name("Alice").result(timeout=5) is None
    assert not announcer.available
    assert announcer.speak_name("Alice") is None
    await announcer.dispose()
