"""Tests for the event relay: suppression, debounce, cross-site isolation, fan-out."""
from unittest.mock import MagicMock

import pytest

from party.adapters import SimulatedPlayer
from party.config import PartyConfig
from party.mailbox import Mailbox
from party.relay import EventRelay, SuppressionFlags
from party.session import SessionStore
from schemas.commands import EventType, encode, video_event

from conftest import settle


def _relay(clock, host=True, site="netflix", config=None):
    store = SessionStore()
    if host:
        store.create_room("abcd1234")
    else:
        store.join_room("abcd1234")
    manager = MagicMock()
    manager.broadcast.return_value = 1
    manager.send_to_host.return_value = True
    player = SimulatedPlayer(10.0, clock=clock, site=site)
    relay = EventRelay(store, manager, player, Mailbox(), config or PartyConfig(seek_settle_ms=0), clock=clock)
    relay.engine = MagicMock()
    return relay


class TestSuppressionFlags:
    def test_consume_is_one_shot(self):
        flags = SuppressionFlags()
        flags.arm(EventType.PLAY)
        assert flags.consume(EventType.PLAY) is True
        assert flags.consume(EventType.PLAY) is False

    def test_flags_are_independent(self):
        flags = SuppressionFlags()
        flags.arm(EventType.SEEK)
        assert flags.consume(EventType.PLAY) is False
        assert flags.is_armed(EventType.SEEK)


class TestOutbound:
    def test_host_broadcasts_local_event(self, clock):
        relay = _relay(clock)
        assert relay.emit_local_event(EventType.PLAY, 10.0) is True
        message = relay.manager.broadcast.call_args.args[0]
        assert message["type"] == "videoEvent"
        assert message["event"]["eventType"] == "play"
        assert message["event"]["data"]["currentTime"] == 10.0
        assert message["userId"] == relay.store.user_id
        assert message["site"] == "netflix"

    def test_client_sends_to_host(self, clock):
        relay = _relay(clock, host=False)
        relay.emit_local_event(EventType.PAUSE, 4.0)
        relay.manager.send_to_host.assert_called_once()
        relay.manager.broadcast.assert_not_called()

    def test_debounce_same_type(self, clock):
        relay = _relay(clock)
        assert relay.emit_local_event(EventType.PLAY, 10.0) is True
        clock.advance(0.3)
        assert relay.emit_local_event(EventType.PLAY, 10.3) is False
        assert relay.manager.broadcast.call_count == 1
        clock.advance(0.5)
        assert relay.emit_local_event(EventType.PLAY, 10.8) is True
        assert relay.manager.broadcast.call_count == 2

    def test_debounce_window_survives_other_types(self, clock):
        relay = _relay(clock)
        relay.emit_local_event(EventType.PLAY, 10.0)
        clock.advance(0.1)
        relay.emit_local_event(EventType.PAUSE, 10.1)
        clock.advance(0.1)
        assert relay.emit_local_event(EventType.PLAY, 10.2) is False
        types = [c.args[0]["event"]["eventType"] for c in relay.manager.broadcast.call_args_list]
        assert types == ["play", "pause"]

    @pytest.mark.asyncio
    async def test_close_seeks_send_one_seek(self, clock):
        relay = _relay(clock, config=PartyConfig(seek_settle_ms=5, seek_followup_ms=5))
        relay._mailbox.start()
        relay.emit_local_event(EventType.SEEK, 20.0)
        await settle(0.05)
        clock.advance(0.3)
        relay.emit_local_event(EventType.SEEK, 40.0)
        await settle(0.05)
        types = [c.args[0]["event"]["eventType"] for c in relay.manager.broadcast.call_args_list]
        assert types.count("seek") == 1
        await relay._mailbox.stop()

    def test_different_type_is_not_debounced(self, clock):
        relay = _relay(clock)
        relay.emit_local_event(EventType.PLAY, 10.0)
        clock.advance(0.1)
        assert relay.emit_local_event(EventType.PAUSE, 10.1) is True
        assert relay.manager.broadcast.call_count == 2

    def test_echo_suppression(self, clock):
        relay = _relay(clock)
        relay.flags.arm(EventType.PAUSE)
        assert relay.emit_local_event(EventType.PAUSE, 10.0) is False
        relay.manager.broadcast.assert_not_called()
        assert relay.emit_local_event(EventType.PAUSE, 10.0) is True

    def test_nothing_sent_outside_a_room(self, clock):
        relay = _relay(clock)
        relay.store.leave_room()
        assert relay.emit_local_event(EventType.PLAY, 1.0) is False
        relay.manager.broadcast.assert_not_called()

    @pytest.mark.asyncio
    async def test_seek_settles_then_follows_up_with_play_state(self, clock):
        relay = _relay(clock, config=PartyConfig(seek_settle_ms=5, seek_followup_ms=5))
        relay._mailbox.start()
        relay.adapter.seek_to(50.0)
        assert relay.emit_local_event(EventType.SEEK, 20.0) is True
        assert relay.emit_local_event(EventType.SEEK, 50.0) is True
        relay.manager.broadcast.assert_not_called()
        await settle(0.05)
        sent = [c.args[0]["event"] for c in relay.manager.broadcast.call_args_list]
        assert [e["eventType"] for e in sent] == ["seek", "pause"]
        assert sent[0]["data"]["currentTime"] == 50.0
        await relay._mailbox.stop()

    @pytest.mark.asyncio
    async def test_adapter_events_reach_relay(self, clock):
        relay = _relay(clock)
        relay._mailbox.start()
        relay.attach()
        relay.adapter.play()
        await settle(0.01)
        assert relay.manager.broadcast.call_args.args[0]["event"]["eventType"] == "play"
        relay.detach()
        await relay._mailbox.stop()


class TestInbound:
    def test_unknown_message_is_dropped(self, clock):
        relay = _relay(clock)
        conn = MagicMock()
        relay.handle_message(conn, {"type": "whatever"})
        relay.manager.send.assert_not_called()

    def test_cross_site_event_is_ignored(self, clock):
        relay = _relay(clock, site="netflix")
        conn = MagicMock()
        message = encode(video_event(EventType.PLAY, 5.0, relay.store.user_id, "youtube"))
        relay.handle_message(conn, message)
        relay.engine.apply.assert_not_called()
        relay.manager.send.assert_not_called()
        relay.manager.broadcast.assert_not_called()

    def test_same_user_same_site_is_applied(self, clock):
        relay = _relay(clock, site="netflix")
        conn = MagicMock()
        message = encode(video_event(EventType.PLAY, 5.0, relay.store.user_id, "netflix"))
        relay.handle_message(conn, message)
        relay.engine.apply.assert_called_once()

    def test_host_applies_acks_and_relays_to_others(self, clock):
        relay = _relay(clock)
        conn = MagicMock()
        message = encode(video_event(EventType.SEEK, 42.0, "someone-else", "netflix"))
        relay.handle_message(conn, message)
        relay.engine.apply.assert_called_once_with(EventType.SEEK, 42.0, None)
        relay.manager.send.assert_called_once_with(conn, {"type": "videoEventResponse", "data": "OK"})
        relay.manager.broadcast.assert_called_once_with(message, exclude=conn)

    def test_client_does_not_relay(self, clock):
        relay = _relay(clock, host=False)
        conn = MagicMock()
        relay.handle_message(conn, encode(video_event(EventType.PAUSE, 1.0, "host-user", "netflix")))
        relay.engine.apply.assert_called_once()
        relay.manager.broadcast.assert_not_called()

    def test_control_commands_go_to_engine(self, clock):
        relay = _relay(clock)
        conn = MagicMock()
        relay.handle_message(conn, {"type": "syncRequest"})
        relay.handle_message(conn, {"type": "roomUrlRequest"})
        relay.engine.on_sync_request.assert_called_once_with(conn)
        relay.engine.on_room_url_request.assert_called_once_with(conn)
