"""Star-topology connection management.

The host registers the deterministic host peer id and accepts any number of
inbound channels; a client registers a random id and keeps exactly one channel
to the host. Transport and channel callbacks only post work onto the party
mailbox, tagged with the transport generation so callbacks from a torn-down
transport are ignored.
"""
import dataclasses
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from logging_config import get_logger
from party.config import PartyConfig
from party.emitter import Emitter
from party.errors import TransportError
from party.mailbox import Mailbox, Timer
from party.session import SessionStore, client_peer_id, host_peer_id
from party.transport import DataChannel, PeerTransport, TransportFactory
from schemas.commands import Leave, Ping, Pong, RoomUrlRequest, SyncRequest, AdminKick, EventType, encode, now_ms, video_event

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    LOST = "lost"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    KICKED = "kicked"

    @property
    def terminal(self) -> bool:
        return self in (ConnectionStatus.LOST, ConnectionStatus.TOO_MANY_ATTEMPTS, ConnectionStatus.KICKED)


class Liveness(str, Enum):
    UNKNOWN = "unknown"
    LIVE = "live"
    STALE = "stale"


@dataclass
class Peer:
    peer_id: str
    active: bool = True
    last_seen_at: float = 0.0


@dataclass
class Connection:
    peer_id: str
    channel: DataChannel
    state: ConnectionState = ConnectionState.IDLE

    @property
    def open(self) -> bool:
        return self.state is ConnectionState.OPEN and self.channel.open


def backoff_delay(attempt: int, base_ms: int = 1000, max_ms: int = 30000) -> int:
    return int(min(2 ** (attempt - 1) * base_ms, max_ms))


class ConnectionManager(Emitter):
    """Owns the transport, the connections and (on the host) the peer registry.

    Events: ``message`` (connection, raw dict) for every non-heartbeat message,
    ``status`` (ConnectionStatus, text), ``participants`` (count),
    ``liveness`` (Liveness), ``host_connected`` (connection), ``kicked``.
    """

    def __init__(self, store: SessionStore, transport_factory: TransportFactory, mailbox: Mailbox,
                 config: Optional[PartyConfig] = None, clock: Callable[[], float] = time.time):
        super().__init__()
        self.store = store
        self.config = config or PartyConfig()
        self._factory = transport_factory
        self._mailbox = mailbox
        self._clock = clock

        self.transport: Optional[PeerTransport] = None
        self.connections: Dict[str, Connection] = {}
        self.registry: Dict[str, Peer] = {}

        self.reconnect_attempts = 0
        self.init_attempts = 0
        self._generation = 0
        self._reconnect_timer: Optional[Timer] = None
        self._heartbeat_timer: Optional[Timer] = None
        self._health_timer: Optional[Timer] = None

        self.last_pong_at: Optional[float] = None
        self.liveness = Liveness.UNKNOWN
        self.status = ConnectionStatus.IDLE
        self.status_text = "Not connected"

    # -- state helpers --------------------------------------------------

    @property
    def is_host(self) -> bool:
        return self.store.session is not None and self.store.session.is_host

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None and self._reconnect_timer.active

    @property
    def participant_count(self) -> int:
        return self.store.participant_count

    def _set_status(self, status: ConnectionStatus, text: str):
        self.status = status
        self.status_text = text
        logger.info(f"Status: {status.value} - {text}")
        self.emit("status", status, text)

    def _set_liveness(self, liveness: Liveness):
        if liveness is not self.liveness:
            self.liveness = liveness
            self.emit("liveness", liveness)

    def update_participant_count(self) -> int:
        if self.is_host:
            active = sum(1 for peer in self.registry.values() if peer.active)
        else:
            active = sum(1 for conn in self.connections.values() if conn.open)
        count = 1 + active
        if self.store.session is not None:
            self.store.update_participant_count(count)
        else:
            self.store.participant_count = count
        self.emit("participants", count)
        return count

    def open_connections(self) -> List[Connection]:
        return [conn for conn in self.connections.values() if conn.open]

    @property
    def host_connection(self) -> Optional[Connection]:
        if self.store.session is None:
            return None
        return self.connections.get(self.store.session.host_peer_id)

    def peer_registry(self) -> Dict[str, Peer]:
        """Snapshot for UI and debug readers."""
        return {peer_id: dataclasses.replace(peer) for peer_id, peer in self.registry.items()}

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self.transport is not None

    # -- lifecycle ------------------------------------------------------

    def initialize(self) -> bool:
        session = self.store.session
        if session is None:
            logger.info("Not in any room, nothing to initialize")
            return False
        if self.transport is not None and not self.transport.destroyed:
            logger.warning("Transport already initialized, tear down first")
            return False

        self.init_attempts += 1
        if self.init_attempts > self.config.max_init_attempts:
            self._set_status(ConnectionStatus.TOO_MANY_ATTEMPTS, "Too many attempts. Refresh to try again.")
            return False

        self._generation += 1
        generation = self._generation
        peer_id = host_peer_id(session.room_id) if session.is_host else client_peer_id()
        logger.info(f"Initializing {session.role.value} transport {peer_id} (attempt {self.init_attempts})")

        transport = self._factory(peer_id)
        post = self._mailbox.post
        transport.on("open", lambda pid: post(self._on_transport_open, generation, pid))
        transport.on("connection", lambda channel: self._on_transport_connection(generation, channel))
        transport.on("disconnected", lambda: post(self._on_transport_lost, generation, "disconnected"))
        transport.on("error", lambda err: post(self._on_transport_lost, generation, err))
        self.transport = transport
        self._set_status(ConnectionStatus.CONNECTING, "Connecting...")
        transport.start()
        self._start_heartbeat()
        return True

    def teardown(self):
        """Cancel the reconnect schedule and timers, close everything, destroy the transport."""
        if self._reconnect_timer:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        for timer in (self._heartbeat_timer, self._health_timer):
            if timer:
                timer.cancel()
        self._heartbeat_timer = None
        self._health_timer = None

        self._generation += 1
        for conn in list(self.connections.values()):
            if conn.open:
                try:
                    conn.channel.send(encode(Leave()))
                except TransportError as e:
                    logger.debug(f"Could not send leave to {conn.peer_id}: {e}")
            try:
                conn.channel.close()
            except TransportError as e:
                logger.debug(f"Error closing connection to {conn.peer_id}: {e}")
            conn.state = ConnectionState.CLOSED
        self.connections.clear()
        for peer in self.registry.values():
            peer.active = False

        if self.transport is not None:
            transport = self.transport
            self.transport = None
            transport.remove_all_listeners()
            transport.destroy()
            logger.debug(f"Destroyed transport {transport.peer_id}")

        self.last_pong_at = None
        self._set_liveness(Liveness.UNKNOWN)
        self.update_participant_count()

    def reset(self):
        """Teardown plus forgetting the registry and all counters, for a new or left room."""
        self.teardown()
        self.registry.clear()
        self.reconnect_attempts = 0
        self.init_attempts = 0
        self.update_participant_count()
        self._set_status(ConnectionStatus.IDLE, "Not connected")

    # -- reconnection ---------------------------------------------------

    def schedule_reconnect(self) -> Optional[int]:
        """Schedule the next reconnect; returns the delay in ms, or None once exhausted."""
        if self._reconnect_timer:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        self.reconnect_attempts += 1
        if self.reconnect_attempts > self.config.max_reconnect_attempts:
            self._set_status(ConnectionStatus.LOST, "Connection lost. Please refresh.")
            return None
        delay = backoff_delay(self.reconnect_attempts, self.config.reconnect_base_ms, self.config.reconnect_max_ms)
        logger.info(f"Reconnect attempt {self.reconnect_attempts} in {delay}ms")
        self._reconnect_timer = self._mailbox.call_later(delay, self._reconnect)
        return delay

    def _reconnect_once(self):
        # one transport drop can surface as channel errors and a transport event
        if self.reconnect_pending:
            logger.debug("Reconnect already scheduled")
            return
        self.schedule_reconnect()

    def _reconnect(self):
        self._reconnect_timer = None
        if self.store.session is None:
            logger.debug("Left the room while a reconnect was pending")
            return
        self.teardown()
        self._set_status(ConnectionStatus.RECONNECTING, f"Reconnecting (attempt {self.reconnect_attempts})")
        self.initialize()

    # -- timers ---------------------------------------------------------

    def _start_heartbeat(self):
        if self._heartbeat_timer:
            self._heartbeat_timer.cancel()
        self._heartbeat_timer = self._mailbox.call_every(self.config.heartbeat_interval_ms, self._heartbeat)

    def _start_health_check(self):
        if self._health_timer:
            self._health_timer.cancel()
        self._health_timer = self._mailbox.call_every(self.config.health_check_interval_ms, self._health_check)

    def _heartbeat(self):
        ping = encode(Ping(timestamp=now_ms()))
        for conn in self.open_connections():
            self.send(conn, ping)
        if self.last_pong_at is not None:
            silent_ms = (self._clock() - self.last_pong_at) * 1000
            if silent_ms > self.config.liveness_timeout_ms:
                if self.liveness is not Liveness.STALE:
                    logger.info(f"No pong received in {int(silent_ms)}ms, liveness ended")
                self._set_liveness(Liveness.STALE)

    def _health_check(self):
        if self.store.session is None or self.reconnect_pending:
            return
        if self.transport is None or self.transport.disconnected:
            logger.warning("Transport is disconnected, scheduling reconnect")
            self.schedule_reconnect()
        else:
            logger.debug("Transport is healthy")

    # -- transport callbacks --------------------------------------------

    def _on_transport_open(self, generation: int, peer_id: str):
        if not self._is_current(generation):
            return
        self.init_attempts = 0
        self._start_health_check()
        session = self.store.session
        if session is None:
            return
        if session.is_host:
            logger.info(f"Host transport open with ID: {peer_id}")
            self.reconnect_attempts = 0
            self._set_status(ConnectionStatus.CONNECTED, "Connected (Host)")
            return

        target = session.host_peer_id
        logger.info(f"Client transport open with ID: {peer_id}, connecting to host {target}")
        channel = self.transport.connect(target)
        self.connections[target] = Connection(peer_id=target, channel=channel, state=ConnectionState.CONNECTING)
        self._watch_channel(generation, channel)

    def _on_transport_connection(self, generation: int, channel: DataChannel):
        # listeners go on synchronously so the channel's open event is not missed
        self._watch_channel(generation, channel)
        self._mailbox.post(self._on_inbound_connection, generation, channel)

    def _on_inbound_connection(self, generation: int, channel: DataChannel):
        if not self._is_current(generation):
            return
        if not self.is_host:
            logger.warning(f"Client rejecting inbound connection from {channel.peer}")
            channel.close()
            return
        previous = self.connections.get(channel.peer)
        if previous is not None and previous.channel is not channel:
            logger.info(f"Replacing existing connection from {channel.peer}")
            previous.channel.close()
        state = ConnectionState.OPEN if channel.open else ConnectionState.CONNECTING
        self.connections[channel.peer] = Connection(peer_id=channel.peer, channel=channel, state=state)
        if state is ConnectionState.OPEN:
            self._register_peer(channel.peer)

    def _on_transport_lost(self, generation: int, reason):
        if not self._is_current(generation):
            return
        logger.warning(f"Transport {self.transport.peer_id} lost: {reason}")
        self._set_status(ConnectionStatus.RECONNECTING, "Connection interrupted")
        self._reconnect_once()

    def _watch_channel(self, generation: int, channel: DataChannel):
        post = self._mailbox.post
        channel.on("open", lambda: post(self._on_channel_open, generation, channel))
        channel.on("data", lambda message: post(self._on_channel_data, generation, channel, message))
        channel.on("close", lambda: post(self._on_channel_close, generation, channel))
        channel.on("error", lambda err: post(self._on_channel_error, generation, channel, err))

    def _connection_for(self, channel: DataChannel) -> Optional[Connection]:
        conn = self.connections.get(channel.peer)
        if conn is None or conn.channel is not channel:
            return None
        return conn

    # -- channel callbacks ----------------------------------------------

    def _register_peer(self, peer_id: str):
        peer = self.registry.get(peer_id)
        if peer is None:
            self.registry[peer_id] = Peer(peer_id=peer_id, active=True, last_seen_at=self._clock())
        else:
            peer.active = True
            peer.last_seen_at = self._clock()
        logger.info(f"New connection from peer: {peer_id}")
        self.update_participant_count()

    def _on_channel_open(self, generation: int, channel: DataChannel):
        if not self._is_current(generation):
            return
        conn = self._connection_for(channel)
        if conn is None:
            return
        conn.state = ConnectionState.OPEN
        if self.is_host:
            self._register_peer(channel.peer)
            return

        logger.info(f"Connected to host: {channel.peer}")
        self.reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED, "Connected")
        self.update_participant_count()
        self.send(conn, encode(SyncRequest()))
        self.send(conn, encode(RoomUrlRequest()))
        self.emit("host_connected", conn)

    def _on_channel_data(self, generation: int, channel: DataChannel, message):
        if not self._is_current(generation):
            return
        conn = self._connection_for(channel)
        if conn is None:
            return
        peer = self.registry.get(channel.peer)
        if peer is not None:
            peer.last_seen_at = self._clock()

        kind = message.get("type") if isinstance(message, dict) else None
        if kind == "ping":
            self.send(conn, encode(Pong(timestamp=now_ms())))
        elif kind == "pong":
            self.last_pong_at = self._clock()
            self._set_liveness(Liveness.LIVE)
        elif kind == "leave":
            logger.info(f"Peer {channel.peer} is leaving")
            channel.close()
        elif kind == "adminCommand" and message.get("command") == "kick" and not self.is_host:
            logger.info("Removed from the room by the host")
            self._set_status(ConnectionStatus.KICKED, "Removed from the room by the host")
            self.emit("kicked")
        else:
            self.emit("message", conn, message)

    def _on_channel_close(self, generation: int, channel: DataChannel):
        if not self._is_current(generation):
            return
        conn = self._connection_for(channel)
        if conn is None:
            return
        logger.info(f"Connection closed: {channel.peer}")
        conn.state = ConnectionState.CLOSED
        del self.connections[channel.peer]
        if self.is_host:
            peer = self.registry.get(channel.peer)
            if peer is not None:
                peer.active = False
            self.update_participant_count()
            return
        self.update_participant_count()
        self._set_status(ConnectionStatus.RECONNECTING, "Host connection closed")
        self._reconnect_once()

    def _on_channel_error(self, generation: int, channel: DataChannel, err):
        if not self._is_current(generation):
            return
        conn = self._connection_for(channel)
        if conn is None:
            return
        logger.error(f"Connection to {channel.peer} error: {err}")
        conn.state = ConnectionState.ERRORED
        del self.connections[channel.peer]
        if self.is_host:
            peer = self.registry.get(channel.peer)
            if peer is not None:
                peer.active = False
            self.update_participant_count()
            return
        self.update_participant_count()
        self._set_status(ConnectionStatus.RECONNECTING, "Host connection failed")
        self._reconnect_once()

    # -- sending --------------------------------------------------------

    def send(self, conn: Connection, message: Union[dict, object]) -> bool:
        if not isinstance(message, dict):
            message = encode(message)
        try:
            conn.channel.send(message)
            return True
        except TransportError as e:
            logger.warning(f"Send to {conn.peer_id} failed: {e}")
            if not self.is_host and not self.reconnect_pending:
                self.schedule_reconnect()
            return False

    def broadcast(self, message: Union[dict, object], exclude: Optional[Connection] = None) -> int:
        if not isinstance(message, dict):
            message = encode(message)
        sent = 0
        for conn in self.open_connections():
            if exclude is not None and conn.channel is exclude.channel:
                continue
            if self.send(conn, message):
                sent += 1
        return sent

    def send_to_host(self, message: Union[dict, object]) -> bool:
        conn = self.host_connection
        if conn is None or not conn.open:
            logger.info("No open host connection, attempting reconnect...")
            if not self.reconnect_pending:
                self.schedule_reconnect()
            return False
        return self.send(conn, message)

    def kick(self, peer_id: str, current_time: Optional[float] = None) -> bool:
        """Host only: pause the peer, tell it it was removed, and close its connection."""
        if not self.is_host:
            logger.warning("Only the host can remove peers")
            return False
        logger.info(f"Removing peer {peer_id}")
        peer = self.registry.get(peer_id)
        if peer is not None:
            peer.active = False
        conn = self.connections.pop(peer_id, None)
        if conn is not None:
            if conn.open:
                if current_time is not None:
                    self.send(conn, video_event(EventType.PAUSE, current_time, self.store.user_id, None))
                self.send(conn, AdminKick())
                self.send(conn, Leave())
            conn.state = ConnectionState.CLOSED
            conn.channel.close()
        self.update_participant_count()
        return True
