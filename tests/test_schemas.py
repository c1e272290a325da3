import pytest
from pydantic import ValidationError

from nowplaying.schemas import HeartbeatMessage, SubscribeMessage, parse_client_message


def test_subscribe():
    assert parse_client_message('{"op": 2, "d": "user1"}') == SubscribeMessage(op=2, d="user1")


def test_heartbeat():
    assert parse_client_message('{"op": 3}') == HeartbeatMessage(op=3)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "{}",
        '{"op": 1}',
        '{"op": 0, "d": {}}',
        '{"op": 2}',
        '{"op": 2, "d": ""}',
        '{"op": 2, "d": "' + "a" * 33 + '"}',
        '{"op": 2, "d": 5}',
        '{"op": 3, "d": null}',
        '{"op": 2, "d": "user1", "extra": true}',
        "[2, \"user1\"]",
    ],
)
def test_malformed(raw):
    with pytest.raises(ValidationError):
        parse_client_message(raw)
