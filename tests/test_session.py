import asyncio
import json

import pytest

from rallysync.audio import AudioCountdownScheduler
from rallysync.client import RallyClient
from rallysync.phase import RallyPhase
from rallysync.session import RESUME_GAP_MS, RallySession
from rallysync.settings import ClientSettings

ALICE = {"id": "A", "name": "Alice", "marchMs": 60_000}
BOB = {"id": "B", "name": "Bob", "marchMs": 30_000}


def _push_state(client, players, rally=None):
    client.handle_message(
        json.dumps({"type": "STATE", "payload": {"players": players, "rally": rally}})
    )


@pytest.fixture
def session(manual_clock, recording_output, fake_announcer):
    client = RallyClient("http://localhost", "room", wall_clock=manual_clock)
    return RallySession(
        client,
        ClientSettings(),
        scheduler=AudioCountdownScheduler(recording_output),
        announcer=fake_announcer,
        wall_clock=manual_clock,
    )


def _rally_opening_in(manual_clock, ms):
    # Alice marches at launch, so her rally opens ms from now
    return {
        "starterId": "A",
        "launchAt": manual_clock.now + 300_000 + ms,
        "rallyDurationMs": 300_000,
    }


def test_tick_without_rally(session, fake_announcer):
    _push_state(session.client, [ALICE])
    assert session.tick() is None
    assert session.view is None
    assert fake_announcer.spoken == []


def test_tick_calls_name_once_and_schedules_countdown(
    session, manual_clock, recording_output, fake_announcer
):
    _push_state(session.client, [ALICE, BOB], _rally_opening_in(manual_clock, 4_000))

    view = session.tick()

    assert view.phase is RallyPhase.JOIN
    assert fake_announcer.spoken == [("Alice", 0.8)]
    # 4s ahead: 3, 2, 1 and go fit, 5 and 4 are already past
    base = recording_output.current_time + 4
    assert recording_output.times == pytest.approx([base - 3, base - 2, base - 1, base])

    manual_clock.advance(200)
    session.tick()
    assert fake_announcer.spoken == [("Alice", 0.8)]
    assert len(recording_output.played) == 4


def test_new_rally_resets_announcements(session, manual_clock, fake_announcer):
    _push_state(session.client, [ALICE], _rally_opening_in(manual_clock, 4_000))
    session.tick()
    assert len(session.dedup) == 1

    _push_state(session.client, [ALICE])
    session.tick()
    assert len(session.dedup) == 0

    _push_state(session.client, [ALICE], _rally_opening_in(manual_clock, 3_000))
    session.tick()
    assert [name for name, _ in fake_announcer.spoken] == ["Alice", "Alice"]


def test_tts_disabled_is_silent(session, manual_clock, recording_output, fake_announcer):
    session.settings.tts_enabled = False
    _push_state(session.client, [ALICE], _rally_opening_in(manual_clock, 4_000))

    session.tick()

    assert fake_announcer.spoken == []
    assert recording_output.played == []


def test_view_listeners_receive_every_tick(session):
    views = []
    session.add_view_listener(views.append)
    session.tick()
    session.tick()
    assert views == [None, None]


def test_sync_label(session, manual_clock):
    assert session.sync_label() == "Syncing"
    session.client.clock.record_sample(12, 10, manual_clock.now)
    assert session.sync_label() == "Live"
    assert session.corrected_now() == manual_clock.now + 12


def test_suspend_gap_triggers_resync(session, manual_clock):
    calls = []
    session.client.resync = lambda: calls.append(manual_clock.now)

    session.tick()
    manual_clock.advance(200)
    session.tick()
    assert calls == []

    manual_clock.advance(RESUME_GAP_MS + 1)
    session.tick()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_end_rally_resets_announcements(session, manual_clock):
    sent = []

    async def end_rally():
        sent.append("end")

    session.client.end_rally = end_rally
    _push_state(session.client, [ALICE], _rally_opening_in(manual_clock, 4_000))
    session.tick()

    await session.end_rally()

    assert sent == ["end"]
    assert len(session.dedup) == 0


@pytest.mark.asyncio
async def test_start_rally_unlocks_audio(session, recording_output, fake_announcer):
    requested = []

    async def start_rally(starter_id, *, rally_minutes, pre_delay_seconds):
        requested.append((starter_id, rally_minutes, pre_delay_seconds))

    session.client.start_rally = start_rally

    await session.start_rally("A")

    assert requested == [("A", 5, 10)]
    assert fake_announcer.unlocked == 1
    assert len(recording_output.played) == 1


@pytest.mark.asyncio
async def test_start_does_not_wait_for_asset_preload(
    manual_clock, recording_output, fake_announcer
):
    release = asyncio.Event()
    fetched = []

    async def slow_fetch(name):
        fetched.append(name)
        await release.wait()
        return b""

    session = RallySession(
        RallyClient("http://localhost", "room", wall_clock=manual_clock),
        ClientSettings(),
        scheduler=AudioCountdownScheduler(recording_output, slow_fetch),
        announcer=fake_announcer,
        wall_clock=manual_clock,
    )

    await asyncio.wait_for(session.start(), timeout=1)
    await asyncio.sleep(0.01)
    assert len(fetched) == 6
    assert session.scheduler.assets is None

    # Disposing with the fetch still pending neither hangs nor raises
    await asyncio.wait_for(session.dispose(), timeout=1)
    assert recording_output.closed


@pytest.mark.asyncio
async def test_dispose_releases_everything(session, recording_output, fake_announcer):
    await session.start()
    await session.dispose()
    assert recording_output.closed
    assert fake_announcer.disposed
