"""Local playback events out, remote commands in.

Outbound: adapter callbacks -> suppression check -> (seek settle) -> debounce
-> host link (client) or every open connection (host).
Inbound: decode -> dispatch; video events are checked against the cross-site
rule, applied through the reconciliation engine, acknowledged to the sender,
and on the host relayed verbatim to every other connection.
"""
import time
from typing import TYPE_CHECKING, Callable, Dict, Optional, Set

from logging_config import get_logger
from party.adapters import PAUSED, PLAYED, SEEKED, VideoControlAdapter
from party.config import PartyConfig
from party.connection import Connection, ConnectionManager
from party.mailbox import Mailbox, Timer
from party.session import SessionStore
from schemas.commands import (
    EventType,
    PlayState,
    RoomUrl,
    RoomUrlRequest,
    SyncRequest,
    SyncResponse,
    VideoEvent,
    VideoEventAck,
    decode,
    encode,
    video_event,
)

if TYPE_CHECKING:
    from party.reconcile import ReconciliationEngine

logger = get_logger(__name__)


class SuppressionFlags:
    """One-shot "ignore the next local event of type T" markers.

    Armed right before the protocol drives the player itself, consumed by the
    first matching native event.
    """

    def __init__(self):
        self._armed: Set[EventType] = set()

    def arm(self, event_type: EventType) -> None:
        self._armed.add(event_type)

    def disarm(self, event_type: EventType) -> None:
        self._armed.discard(event_type)

    def consume(self, event_type: EventType) -> bool:
        if event_type in self._armed:
            self._armed.discard(event_type)
            return True
        return False

    def is_armed(self, event_type: EventType) -> bool:
        return event_type in self._armed

    def clear(self) -> None:
        self._armed.clear()

    def __repr__(self):
        return f"SuppressionFlags({sorted(e.value for e in self._armed)})"


class EventRelay:
    def __init__(self, store: SessionStore, manager: ConnectionManager, adapter: VideoControlAdapter,
                 mailbox: Mailbox, config: Optional[PartyConfig] = None, site: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.manager = manager
        self.adapter = adapter
        self.config = config or PartyConfig()
        self.site = site or adapter.site
        self.flags = SuppressionFlags()
        self.engine: Optional["ReconciliationEngine"] = None
        self.enabled = True
        self._mailbox = mailbox
        self._clock = clock
        # event type -> clock time it was last sent
        self._last_sent: Dict[EventType, float] = {}
        self._seek_timer: Optional[Timer] = None
        self._followup_timer: Optional[Timer] = None
        self._listeners = (
            (PLAYED, lambda: mailbox.post(self.on_played)),
            (PAUSED, lambda: mailbox.post(self.on_paused)),
            (SEEKED, lambda: mailbox.post(self.on_seeked)),
        )
        manager.on("message", self.handle_message)

    def attach(self):
        for event, listener in self._listeners:
            self.adapter.on(event, listener)

    def detach(self):
        for event, listener in self._listeners:
            self.adapter.off(event, listener)

    def reset(self):
        self._cancel_seek_timers()
        self.flags.clear()
        self._last_sent.clear()

    # -- outbound -------------------------------------------------------

    def on_played(self):
        self.emit_local_event(EventType.PLAY, self.adapter.get_state().current_time)

    def on_paused(self):
        self.emit_local_event(EventType.PAUSE, self.adapter.get_state().current_time)

    def on_seeked(self):
        self.emit_local_event(EventType.SEEK, self.adapter.get_state().current_time)

    def emit_local_event(self, event_type: EventType, current_time: Optional[float] = None) -> bool:
        """Entry point for raw player events. Returns whether anything was sent or queued."""
        if not self.enabled or self.store.session is None:
            return False
        if self.flags.consume(event_type):
            logger.debug(f"Suppressed {event_type.value} caused by a remote command")
            return False
        if event_type is EventType.SEEK and self.config.seek_settle_ms > 0:
            self._cancel_seek_timers()
            self._seek_timer = self._mailbox.call_later(self.config.seek_settle_ms, self._flush_seek)
            return True
        return self.send_video_event(event_type, current_time)

    def _cancel_seek_timers(self):
        for timer in (self._seek_timer, self._followup_timer):
            if timer:
                timer.cancel()
        self._seek_timer = None
        self._followup_timer = None

    def _flush_seek(self):
        self._seek_timer = None
        state = self.adapter.get_state()
        self.send_video_event(EventType.SEEK, state.current_time)
        self._followup_timer = self._mailbox.call_later(self.config.seek_followup_ms, self._send_play_state)

    def _send_play_state(self):
        self._followup_timer = None
        state = self.adapter.get_state()
        self.send_video_event(EventType.PLAY if state.playing else EventType.PAUSE, state.current_time)

    def send_video_event(self, event_type: EventType, current_time: Optional[float],
                         state: Optional[PlayState] = None) -> bool:
        if not self.enabled or self.store.session is None:
            return False
        now = self._clock()
        last = self._last_sent.get(event_type)
        if last is not None and (now - last) * 1000 < self.config.debounce_ms:
            logger.debug(f"Debouncing duplicate {event_type.value} event")
            return False
        self._last_sent[event_type] = now

        message = encode(video_event(event_type, current_time, self.store.user_id, self.site, state))
        if self.store.session.is_host:
            sent = self.manager.broadcast(message)
            logger.debug(f"Broadcast {event_type.value} at {current_time} to {sent} peers")
            return True
        return self.manager.send_to_host(message)

    # -- inbound --------------------------------------------------------

    def handle_message(self, conn: Connection, message: dict):
        command = decode(message)
        if command is None:
            return
        if isinstance(command, VideoEvent):
            self._on_video_event(conn, command, message)
        elif self.engine is None:
            logger.debug(f"No reconciliation engine, dropping {command.type}")
        elif isinstance(command, SyncRequest):
            self.engine.on_sync_request(conn)
        elif isinstance(command, RoomUrlRequest):
            self.engine.on_room_url_request(conn)
        elif isinstance(command, SyncResponse):
            self.engine.on_sync_response(command)
        elif isinstance(command, RoomUrl):
            self.engine.on_room_url(command)
        elif isinstance(command, VideoEventAck):
            logger.debug(f"Received videoEventResponse from {conn.peer_id}: {command.data}")
        else:
            logger.debug(f"Unhandled {command.type} from {conn.peer_id}")

    def is_cross_site(self, event: VideoEvent) -> bool:
        return (
            event.user_id is not None
            and event.user_id == self.store.user_id
            and event.site is not None
            and event.site != self.site
        )

    def _on_video_event(self, conn: Connection, event: VideoEvent, raw: dict):
        if self.is_cross_site(event):
            logger.info(f"Ignoring event from same user's different site ({event.site})")
            return
        if self.enabled and self.engine is not None:
            self.engine.apply(event.event_type, event.current_time, event.state)
        self.manager.send(conn, encode(VideoEventAck()))
        if self.store.session is not None and self.store.session.is_host:
            relayed = self.manager.broadcast(raw, exclude=conn)
            logger.debug(f"Relayed {event.event_type.value} from {conn.peer_id} to {relayed} peers")
