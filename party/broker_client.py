"""Peer transport over the broker server's ``/peers/{peer_id}/ws`` websocket.

One websocket per transport carries every channel. Frames are JSON objects
``{kind, dst, channel_id, payload}``; the broker stamps ``src`` on delivery.
Outgoing frames go through a single queue so channel messages keep their
send order.
"""
import asyncio
import json
import uuid
from typing import Dict, Optional
from urllib.parse import quote

import websockets
from websockets.exceptions import InvalidHandshake, WebSocketException

from constants import BROKER_URL
from logging_config import get_logger
from party.errors import PeerUnavailableError, TransportError
from party.transport import DataChannel, PeerTransport

logger = get_logger(__name__)


class BrokerChannel(DataChannel):
    def __init__(self, transport: "BrokerTransport", peer: str, channel_id: Optional[str] = None):
        super().__init__(peer)
        self.channel_id = channel_id or uuid.uuid4().hex
        self._transport = transport
        self._closing = False

    def send(self, message: dict) -> None:
        if not self.open:
            raise TransportError(f"Channel to {self.peer} is not open")
        self._transport._queue_frame("data", self.peer, self.channel_id, message)

    def close(self) -> None:
        if self._closing:
            return
        was_linked = self.open
        self._detach()
        if was_linked:
            self._transport._queue_frame("close", self.peer, self.channel_id)
        asyncio.get_running_loop().call_soon(self.emit, "close")

    def _detach(self):
        self._closing = True
        self.open = False
        self._transport._channels.pop(self.channel_id, None)

    def _mark_open(self):
        if self._closing:
            return
        self.open = True
        self.emit("open")

    def _deliver(self, message):
        if self.open:
            self.emit("data", message)

    def _remote_closed(self):
        if self._closing:
            return
        self._detach()
        self.emit("close")

    def _fail(self, error: Exception):
        if self._closing:
            return
        self._detach()
        self.emit("error", error)
        self.emit("close")


class BrokerTransport(PeerTransport):
    def __init__(self, peer_id: str, broker_url: str = BROKER_URL):
        super().__init__(peer_id)
        self.broker_url = broker_url.rstrip("/")
        self._channels: Dict[str, BrokerChannel] = {}
        self._outbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._ws = None

    @property
    def url(self) -> str:
        return f"{self.broker_url}/peers/{quote(self.peer_id, safe='')}/ws"

    def start(self) -> None:
        if self._task is not None:
            return
        self._outbox = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def connect(self, peer_id: str) -> DataChannel:
        channel = BrokerChannel(self, peer_id)
        self._queue_frame("connect", peer_id, channel.channel_id)
        self._channels[channel.channel_id] = channel
        return channel

    def destroy(self) -> None:
        if self.destroyed:
            return
        for channel in list(self._channels.values()):
            channel.close()
        self.destroyed = True
        self.disconnected = True
        if self._task is not None:
            if self._ws is None:
                self._task.cancel()
            else:
                # writer flushes queued close frames, then closes the socket
                self._outbox.put_nowait(None)
        self.emit("close")

    def _queue_frame(self, kind: str, dst: str, channel_id: str, payload=None):
        if self._outbox is None or self.destroyed:
            raise TransportError(f"Transport {self.peer_id} is not running")
        frame = {"kind": kind, "dst": dst, "channel_id": channel_id}
        if payload is not None:
            frame["payload"] = payload
        self._outbox.put_nowait(frame)

    async def _run(self):
        logger.info(f"Connecting {self.peer_id} to broker at {self.url}")
        try:
            async with websockets.connect(self.url) as ws:
                self._ws = ws
                writer = asyncio.create_task(self._write(ws))
                try:
                    async for raw in ws:
                        try:
                            frame = json.loads(raw)
                        except json.JSONDecodeError:
                            logger.warning(f"Dropping non-JSON frame for {self.peer_id}")
                            continue
                        self._handle_frame(frame)
                finally:
                    writer.cancel()
                    try:
                        await writer
                    except asyncio.CancelledError:
                        pass
        except asyncio.CancelledError:
            logger.debug(f"Broker connection for {self.peer_id} cancelled")
            raise
        except InvalidHandshake as e:
            logger.warning(f"Broker refused peer id {self.peer_id}: {e}")
            self.emit("error", PeerUnavailableError(self.peer_id, reason="unavailable-id"))
        except (OSError, WebSocketException) as e:
            logger.warning(f"Broker connection for {self.peer_id} failed: {e}")
            if not self.destroyed:
                self.emit("error", TransportError(str(e)))
        finally:
            self._ws = None
            self._lost()

    async def _write(self, ws):
        while True:
            frame = await self._outbox.get()
            if frame is None:
                await ws.close()
                return
            try:
                await ws.send(json.dumps(frame))
            except WebSocketException as e:
                logger.warning(f"Failed to send {frame['kind']} frame to {frame['dst']}: {e}")
                return

    def _lost(self):
        for channel in list(self._channels.values()):
            channel._fail(TransportError("broker connection closed"))
        if self.destroyed or self.disconnected:
            return
        self.disconnected = True
        logger.info(f"Peer {self.peer_id} lost its broker connection")
        self.emit("disconnected")

    def _handle_frame(self, frame: dict):
        kind = frame.get("kind")
        channel_id = frame.get("channel_id")
        src = frame.get("src")
        if kind == "open":
            self.disconnected = False
            self.emit("open", self.peer_id)
        elif kind == "connect" and src:
            channel = BrokerChannel(self, src, channel_id)
            self._channels[channel.channel_id] = channel
            self.emit("connection", channel)
            self._queue_frame("accept", src, channel.channel_id)
            asyncio.get_running_loop().call_soon(channel._mark_open)
        elif kind == "accept":
            channel = self._channels.get(channel_id)
            if channel is not None:
                channel._mark_open()
        elif kind == "data":
            channel = self._channels.get(channel_id)
            if channel is not None:
                channel._deliver(frame.get("payload"))
        elif kind == "close":
            channel = self._channels.get(channel_id)
            if channel is not None:
                channel._remote_closed()
        elif kind == "error":
            channel = self._channels.get(channel_id)
            if channel is not None:
                channel._fail(PeerUnavailableError(channel.peer, reason=frame.get("reason", "peer-unavailable")))
            else:
                logger.warning(f"Broker error for {self.peer_id}: {frame.get('reason')}")
        elif kind == "gone" and src:
            for channel in [c for c in self._channels.values() if c.peer == src]:
                channel._remote_closed()
        else:
            logger.debug(f"Ignoring broker frame {kind!r}")
