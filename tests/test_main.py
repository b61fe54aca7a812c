import pytest

from rallysync.__main__ import main, make_parser
from rallysync.daemon import http_base_url


@pytest.mark.parametrize(
    "server_url,expected",
    [
        ("ws://localhost:8080/ws", "http://localhost:8080"),
        ("wss://rally.example", "https://rally.example"),
        ("https://rally.example/app", "https://rally.example"),
        ("10.0.0.2:9000", "http://10.0.0.2:9000"),
    ],
)
def test_http_base_url(server_url, expected):
    assert http_base_url(server_url) == expected


def test_watch_options():
    args = make_parser().parse_args(
        ["watch", "--url", "http://h", "--room", "r", "--no-tts", "--notify", "A", "B"]
    )
    assert args.cmd == "watch"
    assert args.tts is False
    assert args.notify == ["A", "B"]
    assert args.march_calls is None


def test_add_requires_numeric_seconds():
    with pytest.raises(SystemExit):
        make_parser().parse_args(["add", "Alice", "soon"])


def test_room_commands_need_url_and_room_first(tmp_path):
    assert main(["players", "--config-dir", str(tmp_path)]) == 2
