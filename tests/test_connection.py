"""Tests for the star-topology connection manager."""
import asyncio
from unittest.mock import MagicMock

import pytest

from party.broker_client import BrokerTransport
from party.connection import ConnectionManager, ConnectionStatus, Liveness, Peer, backoff_delay
from party.mailbox import Mailbox
from party.session import SessionStore
from party.transport import LocalNetwork

from conftest import settle


def _manager(store, factory=None, config=None, clock=None):
    kwargs = {"clock": clock} if clock is not None else {}
    return ConnectionManager(store, factory or LocalNetwork(), Mailbox(), config, **kwargs)


class TestBackoff:
    def test_sequence_doubles(self):
        assert [backoff_delay(n) for n in range(1, 6)] == [1000, 2000, 4000, 8000, 16000]

    def test_capped(self):
        assert backoff_delay(6) == 30000
        assert backoff_delay(10) == 30000

    @pytest.mark.asyncio
    async def test_schedule_reconnect_until_exhausted(self):
        store = SessionStore()
        store.join_room("abcd1234")
        manager = _manager(store)
        delays = [manager.schedule_reconnect() for _ in range(10)]
        assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000, 30000, 30000, 30000]
        assert manager.reconnect_pending

        assert manager.schedule_reconnect() is None
        assert manager.status is ConnectionStatus.LOST
        assert manager.status_text == "Connection lost. Please refresh."
        assert not manager.reconnect_pending
        manager.teardown()


class TestParticipantCount:
    def test_host_counts_active_registry_entries(self):
        store = SessionStore()
        store.create_room("abcd1234")
        manager = _manager(store)
        manager.registry = {
            "A": Peer("A", active=True),
            "B": Peer("B", active=False),
            "C": Peer("C", active=True),
        }
        assert manager.update_participant_count() == 3
        assert store.participant_count == 3
        assert store.storage.data["participantCount"] == 3

    def test_client_without_host_link_counts_itself(self):
        store = SessionStore()
        store.join_room("abcd1234")
        assert _manager(store).update_participant_count() == 1

    def test_registry_snapshot_is_a_copy(self):
        store = SessionStore()
        store.create_room("abcd1234")
        manager = _manager(store)
        manager.registry = {"A": Peer("A")}
        snapshot = manager.peer_registry()
        snapshot["A"].active = False
        assert manager.registry["A"].active is True


class TestInitialize:
    def test_not_in_a_room(self):
        assert _manager(SessionStore()).initialize() is False

    @pytest.mark.asyncio
    async def test_too_many_attempts(self):
        store = SessionStore()
        store.join_room("abcd1234")
        factory = MagicMock()
        manager = _manager(store, factory)
        for _ in range(5):
            assert manager.initialize() is True
            manager.teardown()
        assert manager.initialize() is False
        assert manager.status is ConnectionStatus.TOO_MANY_ATTEMPTS
        assert manager.status_text == "Too many attempts. Refresh to try again."
        assert factory.call_count == 5

    @pytest.mark.asyncio
    async def test_client_peer_id_is_random_host_id_is_fixed(self):
        store = SessionStore()
        store.create_room("abcd1234")
        factory = MagicMock()
        manager = _manager(store, factory)
        manager.initialize()
        factory.assert_called_once_with("curryparty-host-abcd1234")
        manager.reset()

        store.join_room("abcd1234")
        manager.initialize()
        assert factory.call_args.args[0].startswith("curryparty-peer-r")
        manager.reset()


class TestLiveness:
    @pytest.mark.asyncio
    async def test_missing_pongs_mark_stale(self, clock):
        store = SessionStore()
        store.join_room("abcd1234")
        manager = _manager(store, clock=clock)
        seen = []
        manager.on("liveness", seen.append)
        manager.last_pong_at = clock()
        clock.advance(1)
        manager._heartbeat()
        assert manager.liveness is Liveness.UNKNOWN
        clock.advance(4)
        manager._heartbeat()
        assert manager.liveness is Liveness.STALE
        assert seen == [Liveness.STALE]


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_disconnected_transport_schedules_one_reconnect(self):
        store = SessionStore()
        store.join_room("abcd1234")
        manager = _manager(store, MagicMock())
        manager.initialize()
        manager.transport.disconnected = False
        manager._health_check()
        assert not manager.reconnect_pending

        manager.transport.disconnected = True
        manager._health_check()
        assert manager.reconnect_pending
        assert manager.reconnect_attempts == 1
        manager._health_check()
        assert manager.reconnect_attempts == 1
        manager.reset()


class _FramedBrokerTransport(BrokerTransport):
    """Broker transport fed frames by the test instead of a websocket."""

    def start(self):
        self._outbox = asyncio.Queue()


class TestBrokerDrop:
    @pytest.mark.asyncio
    async def test_one_drop_schedules_one_reconnect(self):
        store = SessionStore()
        store.join_room("abcd1234")
        transports = []

        def factory(peer_id):
            transport = _FramedBrokerTransport(peer_id, broker_url="ws://broker.test/")
            transports.append(transport)
            return transport

        manager = _manager(store, factory)
        manager._mailbox.start()
        manager.initialize()
        transport = transports[0]
        transport._handle_frame({"kind": "open", "peer_id": transport.peer_id})
        await settle(0.01)
        channel_id = next(iter(transport._channels))
        transport._handle_frame({"kind": "accept", "src": "curryparty-host-abcd1234", "channel_id": channel_id})
        await settle(0.01)
        assert manager.status is ConnectionStatus.CONNECTED

        delays = []
        schedule = manager.schedule_reconnect

        def recording_schedule():
            delay = schedule()
            delays.append(delay)
            return delay

        manager.schedule_reconnect = recording_schedule
        transport._lost()
        await settle(0.01)
        assert delays == [1000]
        assert manager.reconnect_attempts == 1
        assert manager.reconnect_pending
        assert manager.status is ConnectionStatus.RECONNECTING

        manager.reset()
        await manager._mailbox.stop()


class TestStarTopology:
    """Host and clients over the in-process network."""

    @pytest.mark.asyncio
    async def test_client_connects_and_requests_state(self, fast_config):
        network = LocalNetwork()
        host_store, client_store = SessionStore(), SessionStore()
        host_store.create_room("abcd1234")
        client_store.join_room("abcd1234")
        host = ConnectionManager(host_store, network, Mailbox("host"), fast_config)
        client = ConnectionManager(client_store, network, Mailbox("client"), fast_config)
        received = []
        host.on("message", lambda conn, msg: received.append(msg["type"]))
        host._mailbox.start()
        client._mailbox.start()

        host.initialize()
        await settle()
        client.initialize()
        await settle(0.1)

        assert host.status is ConnectionStatus.CONNECTED
        assert client.status is ConnectionStatus.CONNECTED
        assert received == ["syncRequest", "roomUrlRequest"]
        assert host.participant_count == 2
        assert client.participant_count == 2
        assert [p.active for p in host.peer_registry().values()] == [True]
        assert client.liveness is Liveness.LIVE
        assert client.init_attempts == 0

        client.reset()
        await settle()
        assert host.participant_count == 1
        assert [p.active for p in host.peer_registry().values()] == [False]

        host.reset()
        await host._mailbox.stop()
        await client._mailbox.stop()

    @pytest.mark.asyncio
    async def test_client_retries_until_host_appears(self, fast_config):
        network = LocalNetwork()
        host_store, client_store = SessionStore(), SessionStore()
        host_store.create_room("abcd1234")
        client_store.join_room("abcd1234")
        host = ConnectionManager(host_store, network, Mailbox("host"), fast_config)
        client = ConnectionManager(client_store, network, Mailbox("client"), fast_config)
        host._mailbox.start()
        client._mailbox.start()

        client.initialize()
        await settle()
        assert client.reconnect_attempts >= 1

        host.initialize()
        await settle(0.5)
        assert client.status is ConnectionStatus.CONNECTED
        assert client.reconnect_attempts == 0
        assert host.participant_count == 2

        client.reset()
        host.reset()
        await host._mailbox.stop()
        await client._mailbox.stop()

    @pytest.mark.asyncio
    async def test_broadcast_excludes_sender(self, fast_config):
        network = LocalNetwork()
        stores = [SessionStore() for _ in range(3)]
        stores[0].create_room("abcd1234")
        for store in stores[1:]:
            store.join_room("abcd1234")
        managers = [ConnectionManager(s, network, Mailbox(f"m{i}"), fast_config) for i, s in enumerate(stores)]
        inboxes = [[] for _ in managers]
        for manager, inbox in zip(managers, inboxes):
            manager.on("message", lambda conn, msg, inbox=inbox: inbox.append(msg))
            manager._mailbox.start()

        managers[0].initialize()
        await settle()
        managers[1].initialize()
        managers[2].initialize()
        await settle(0.1)

        host = managers[0]
        sender = host.connections[managers[1].transport.peer_id]
        assert host.broadcast({"type": "custom", "n": 1}, exclude=sender) == 1
        await settle()
        assert {"type": "custom", "n": 1} not in inboxes[1]
        assert {"type": "custom", "n": 1} in inboxes[2]

        for manager in managers:
            manager.reset()
            await manager._mailbox.stop()

    @pytest.mark.asyncio
    async def test_client_recovers_from_lost_transport(self, fast_config):
        network = LocalNetwork()
        host_store, client_store = SessionStore(), SessionStore()
        host_store.create_room("abcd1234")
        client_store.join_room("abcd1234")
        host = ConnectionManager(host_store, network, Mailbox("host"), fast_config)
        client = ConnectionManager(client_store, network, Mailbox("client"), fast_config)
        host._mailbox.start()
        client._mailbox.start()
        host.initialize()
        await settle()
        client.initialize()
        await settle(0.1)
        old_peer_id = client.transport.peer_id

        client.transport.simulate_disconnect()
        await settle(0.3)

        assert client.status is ConnectionStatus.CONNECTED
        assert client.reconnect_attempts == 0
        assert client.transport.peer_id != old_peer_id
        assert client.participant_count == 2
        assert host.participant_count == 2

        client.reset()
        host.reset()
        await host._mailbox.stop()
        await client._mailbox.stop()

    @pytest.mark.asyncio
    async def test_host_recovers_from_lost_transport(self, fast_config):
        network = LocalNetwork()
        host_store, client_store = SessionStore(), SessionStore()
        host_store.create_room("abcd1234")
        client_store.join_room("abcd1234")
        host = ConnectionManager(host_store, network, Mailbox("host"), fast_config)
        client = ConnectionManager(client_store, network, Mailbox("client"), fast_config)
        host._mailbox.start()
        client._mailbox.start()
        host.initialize()
        await settle()
        client.initialize()
        await settle(0.1)

        host.transport.simulate_disconnect()
        await settle(0.5)

        assert host.status is ConnectionStatus.CONNECTED
        assert host.reconnect_attempts == 0
        assert client.status is ConnectionStatus.CONNECTED
        assert client.reconnect_attempts == 0
        assert host.participant_count == 2
        assert client.participant_count == 2

        client.reset()
        host.reset()
        await host._mailbox.stop()
        await client._mailbox.stop()

    @pytest.mark.asyncio
    async def test_stale_liveness_keeps_host_link(self, fast_config, clock):
        network = LocalNetwork()
        host_store, client_store = SessionStore(), SessionStore()
        host_store.create_room("abcd1234")
        client_store.join_room("abcd1234")
        host = ConnectionManager(host_store, network, Mailbox("host"), fast_config)
        client = ConnectionManager(client_store, network, Mailbox("client"), fast_config, clock=clock)
        host._mailbox.start()
        client._mailbox.start()
        host.initialize()
        await settle()
        client.initialize()
        await settle(0.1)
        assert client.liveness is Liveness.LIVE

        # host stops answering pings
        host.send = MagicMock(return_value=True)
        await settle()
        clock.advance(5)
        await settle(0.1)

        assert client.liveness is Liveness.STALE
        assert not client.reconnect_pending
        assert client.host_connection.open
        assert client.status is ConnectionStatus.CONNECTED

        client.reset()
        host.reset()
        await host._mailbox.stop()
        await client._mailbox.stop()
