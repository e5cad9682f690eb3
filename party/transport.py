"""Peer transport contract and the in-process implementation.

A transport owns one logical peer id. It reports ``open`` once the id is
registered, ``connection`` for every inbound channel, ``disconnected`` when it
loses its registration, ``error`` on failures and ``close`` once destroyed.
Channels report ``open``, ``data``, ``close`` and ``error`` and deliver
messages in send order.
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from logging_config import get_logger
from party.emitter import Emitter
from party.errors import PeerUnavailableError, TransportError

logger = get_logger(__name__)


class DataChannel(Emitter, ABC):
    def __init__(self, peer: str):
        super().__init__()
        self.peer = peer
        self.open = False

    @abstractmethod
    def send(self, message: dict) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class PeerTransport(Emitter, ABC):
    def __init__(self, peer_id: str):
        super().__init__()
        self.peer_id = peer_id
        self.disconnected = True
        self.destroyed = False

    @abstractmethod
    def start(self) -> None:
        """Begin registering the peer id; completion is reported through events."""

    @abstractmethod
    def connect(self, peer_id: str) -> DataChannel:
        ...

    @abstractmethod
    def destroy(self) -> None:
        ...


TransportFactory = Callable[[str], PeerTransport]


class LocalChannel(DataChannel):
    def __init__(self, transport: "LocalTransport", peer: str):
        super().__init__(peer)
        self._transport = transport
        self._remote: Optional["LocalChannel"] = None
        self._closing = False

    def _loop(self):
        return asyncio.get_running_loop()

    def send(self, message: dict) -> None:
        if not self.open or self._remote is None:
            raise TransportError(f"Channel to {self.peer} is not open")
        self._loop().call_soon(self._remote._deliver, copy.deepcopy(message))

    def _deliver(self, message: dict):
        if self.open:
            self.emit("data", message)

    def _mark_open(self):
        if self._closing:
            return
        self.open = True
        self.emit("open")

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self.open = False
        self._transport._channels.discard(self)
        loop = self._loop()
        loop.call_soon(self.emit, "close")
        if self._remote is not None:
            loop.call_soon(self._remote._remote_closed)

    def _remote_closed(self):
        if self._closing:
            return
        self._closing = True
        self.open = False
        self._transport._channels.discard(self)
        self.emit("close")

    def _fail(self, error: Exception):
        self._closing = True
        self.open = False
        self._transport._channels.discard(self)
        self.emit("error", error)
        self.emit("close")


class LocalTransport(PeerTransport):
    def __init__(self, network: "LocalNetwork", peer_id: str):
        super().__init__(peer_id)
        self._network = network
        self._channels = set()

    def start(self) -> None:
        asyncio.get_running_loop().call_soon(self._register)

    def _register(self):
        if self.destroyed:
            return
        try:
            self._network._register(self)
        except PeerUnavailableError as e:
            logger.warning(f"Local transport {self.peer_id} failed to register: {e}")
            self.emit("error", e)
            return
        self.disconnected = False
        self.emit("open", self.peer_id)

    def connect(self, peer_id: str) -> DataChannel:
        channel = LocalChannel(self, peer_id)
        self._channels.add(channel)
        asyncio.get_running_loop().call_soon(self._network._link, self, channel)
        return channel

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        self.disconnected = True
        for channel in list(self._channels):
            channel.close()
        self._network._unregister(self)
        self.emit("close")

    def simulate_disconnect(self):
        """Drop the registration while keeping channels, like a lost signalling link."""
        self._network._unregister(self)
        self.disconnected = True
        self.emit("disconnected")


class LocalNetwork:
    """In-process peer id registry; call it with a peer id to get a transport."""

    def __init__(self):
        self._peers: Dict[str, LocalTransport] = {}

    def __call__(self, peer_id: str) -> LocalTransport:
        return LocalTransport(self, peer_id)

    def _register(self, transport: LocalTransport):
        current = self._peers.get(transport.peer_id)
        if current is not None and current is not transport and not current.destroyed:
            raise PeerUnavailableError(transport.peer_id, reason="unavailable-id")
        self._peers[transport.peer_id] = transport

    def _unregister(self, transport: LocalTransport):
        if self._peers.get(transport.peer_id) is transport:
            del self._peers[transport.peer_id]

    def _link(self, origin: LocalTransport, channel: LocalChannel):
        if channel._closing:
            return
        target = self._peers.get(channel.peer)
        if target is None or target.destroyed:
            logger.debug(f"Local connect {origin.peer_id} -> {channel.peer}: peer unavailable")
            channel._fail(PeerUnavailableError(channel.peer))
            return
        remote = LocalChannel(target, origin.peer_id)
        remote._remote = channel
        channel._remote = remote
        target._channels.add(remote)
        target.emit("connection", remote)
        loop = asyncio.get_running_loop()
        loop.call_soon(remote._mark_open)
        loop.call_soon(channel._mark_open)

    def is_registered(self, peer_id: str) -> bool:
        return peer_id in self._peers
