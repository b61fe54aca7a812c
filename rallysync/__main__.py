"""Command line interface for rallysync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable

from aiohttp import ClientError

from rallysync.audio import query_devices
from rallysync.client import RallyClient
from rallysync.daemon import DaemonConfig, RallyDaemon
from rallysync.settings import ClientSettings, get_client_settings
from rallysync.utils import format_ms

logger = logging.getLogger(__name__)

ClientAction = Callable[[RallyClient], Awaitable[None]]


def make_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--url", help="Rally server URL (defaults to the last one used)")
    common.add_argument("--room", help="Room id (defaults to the last one used)")
    common.add_argument("--config-dir", help="Settings directory (default ~/.config/rallysync)")
    common.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default INFO)",
    )

    p = argparse.ArgumentParser(prog="rallysync", description="Synchronized rally countdowns")
    sub = p.add_subparsers(dest="cmd", required=True)

    pw = sub.add_parser("watch", parents=[common], help="Follow a room and call out countdowns")
    pw.add_argument("--assets", help="Countdown sound directory or base URL")
    pw.add_argument("--audio-device", type=int, help="Output device index (see 'devices')")
    pw.add_argument("--notify", nargs="*", metavar="PLAYER_ID", help="Only call these players")
    pw.add_argument("--beep-level", type=int, help="Countdown volume 0-100")
    pw.add_argument("--tts-level", type=int, help="Speech volume 0-100")
    pw.add_argument("--tts", action=argparse.BooleanOptionalAction, help="Enable name calls")
    pw.add_argument(
        "--rally-calls", action=argparse.BooleanOptionalAction, help="Call rally openings"
    )
    pw.add_argument(
        "--march-calls", action=argparse.BooleanOptionalAction, help="Call march starts"
    )
    pw.add_argument("--rally-minutes", type=float, help="Fallback rally duration in minutes")

    pa = sub.add_parser("add", parents=[common], help="Add a player")
    pa.add_argument("name")
    pa.add_argument("seconds", type=float, help="March time in seconds")

    pr = sub.add_parser("remove", parents=[common], help="Remove a player")
    pr.add_argument("player_id")

    ps = sub.add_parser("start", parents=[common], help="Start a rally")
    ps.add_argument("starter_id", help="Player whose march anchors the landing")
    ps.add_argument("--rally-minutes", type=float, help="Rally duration in minutes")
    ps.add_argument("--pre-delay", type=float, help="Seconds before the rally opens")

    sub.add_parser("end", parents=[common], help="End the active rally")
    sub.add_parser("players", parents=[common], help="List players in the room")
    sub.add_parser("devices", help="List audio output devices")

    return p


def _list_devices() -> int:
    devices = query_devices()
    if not devices:
        print("No audio output devices found")  # noqa: T201
        return 1
    for dev in devices:
        marker = "*" if dev.is_default else " "
        print(  # noqa: T201
            f"{marker} {dev.index:3d}  {dev.name} "
            f"({dev.output_channels} ch, {dev.sample_rate:.0f} Hz)"
        )
    return 0


async def _one_shot(url: str, room_id: str, action: ClientAction) -> int:
    """Connect, wait for the first snapshot, run one command and disconnect."""
    client = RallyClient(url, room_id)
    try:
        await client.connect()
        await client.wait_for_state()
        await action(client)
    except (TimeoutError, OSError, ClientError) as e:
        logger.error("Unable to reach %s: %s", client.url, str(e) or type(e).__name__)
        return 1
    except ValueError as e:
        logger.error("%s", e)
        return 1
    finally:
        await client.disconnect()
    return 0


async def _print_players(client: RallyClient) -> None:
    state = client.state
    starter = state.rally.starter_id if state.rally is not None else None
    for player in sorted(state.players, key=lambda p: p.name.lower()):
        marker = "*" if player.id == starter else " "
        print(  # noqa: T201
            f"{marker} {player.id}  {player.name:<20} march {format_ms(player.march_ms)}"
        )


def _command_action(args: argparse.Namespace, settings: ClientSettings) -> ClientAction:
    """Build the one-shot action for a room command."""
    if args.cmd == "add":

        async def add(client: RallyClient) -> None:
            player_id = await client.add_player(args.name, args.seconds)
            print(player_id)  # noqa: T201

        return add

    if args.cmd == "remove":

        async def remove(client: RallyClient) -> None:
            await client.remove_player(args.player_id)

        return remove

    if args.cmd == "start":
        settings.update(rally_minutes=args.rally_minutes, pre_delay_seconds=args.pre_delay)

        async def start(client: RallyClient) -> None:
            await client.start_rally(
                args.starter_id,
                rally_minutes=settings.rally_minutes,
                pre_delay_seconds=settings.pre_delay_seconds,
            )

        return start

    if args.cmd == "end":

        async def end(client: RallyClient) -> None:
            await client.end_rally()

        return end

    return _print_players


def _apply_watch_options(args: argparse.Namespace, settings: ClientSettings) -> None:
    settings.update(
        beep_level=args.beep_level,
        tts_level=args.tts_level,
        selected_ids=args.notify,
        tts_enabled=args.tts,
        tts_rally_calls=args.rally_calls,
        tts_march_calls=args.march_calls,
        rally_minutes=args.rally_minutes,
        audio_device=args.audio_device,
        assets=args.assets,
    )


async def _async_main(args: argparse.Namespace) -> int:
    settings = await get_client_settings(args.config_dir)

    level = args.log_level or settings.log_level or "INFO"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    url = args.url or settings.last_server_url
    room_id = args.room or settings.last_room_id
    if not url or not room_id:
        logger.error("Both --url and --room are required the first time")
        return 2
    settings.update(last_server_url=url, last_room_id=room_id, log_level=args.log_level)

    try:
        if args.cmd != "watch":
            return await _one_shot(url, room_id, _command_action(args, settings))

        _apply_watch_options(args, settings)
        daemon = RallyDaemon(
            DaemonConfig(
                url=url,
                room_id=room_id,
                settings=settings,
                audio_device=settings.audio_device,
                assets=settings.assets,
            )
        )
        return await daemon.run()
    finally:
        await settings.flush()


def main(argv: list[str] | None = None) -> int:
    args = make_parser().parse_args(argv)
    if args.cmd == "devices":
        return _list_devices()
    try:
        return asyncio.run(_async_main(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
