"""Tests for the broker's Redis backend."""
import json
from unittest.mock import MagicMock

import redis

from backend import RedisBackend


def _backend():
    return RedisBackend(client=MagicMock(), pubsub_client=MagicMock())


class TestPeers:
    def test_register_claims_id_once(self):
        backend = _backend()
        backend.redis_client.set.return_value = True
        assert backend.register_peer("curryparty-host-abcd1234", {"connected_at": "now"}, ttl=60) is True
        backend.redis_client.set.assert_called_once_with(
            "peer:curryparty-host-abcd1234", json.dumps({"connected_at": "now"}), nx=True, ex=60
        )

    def test_register_taken_id(self):
        backend = _backend()
        backend.redis_client.set.return_value = None
        assert backend.register_peer("curryparty-host-abcd1234", {}) is False

    def test_publish_to_peer_channel(self):
        backend = _backend()
        backend.publish_to_peer("p1", {"kind": "gone", "src": "p2"})
        backend.redis_client.publish.assert_called_once_with("peer:channel:p1", json.dumps({"kind": "gone", "src": "p2"}))

    def test_subscribe_uses_pubsub_connection(self):
        backend = _backend()
        pubsub = backend.subscribe_to_peer("p1")
        pubsub.subscribe.assert_called_once_with("peer:channel:p1")


class TestRooms:
    def test_create_room_skips_none(self):
        backend = _backend()
        backend.create_room("abcd1234", {"room_id": "abcd1234", "room_url": None}, ttl=30)
        backend.redis_client.hset.assert_called_once_with("room:meta:abcd1234", mapping={"room_id": "abcd1234"})
        backend.redis_client.expire.assert_called_once_with("room:meta:abcd1234", 30)

    def test_get_room_keeps_string_id(self):
        backend = _backend()
        backend.redis_client.hgetall.return_value = {"room_id": "12345678", "room_url": "https://x"}
        room = backend.get_room("12345678")
        assert room["room_id"] == "12345678"
        assert room["room_url"] == "https://x"

    def test_get_missing_room(self):
        backend = _backend()
        backend.redis_client.hgetall.return_value = {}
        assert backend.get_room("nope") is None


class TestPing:
    def test_ping_failure_is_reported(self):
        backend = _backend()
        backend.redis_client.ping.side_effect = redis.ConnectionError("down")
        assert backend.ping() is False
