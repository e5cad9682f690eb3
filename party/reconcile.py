"""Drift correction and room URL following."""
from typing import Optional

from logging_config import get_logger
from party.adapters import VideoControlAdapter
from party.config import PartyConfig
from party.connection import Connection, ConnectionManager
from party.errors import PlaybackRejected
from party.mailbox import Mailbox, Timer
from party.notify import LogNavigator, LogNotifier, Navigator, Notifier
from party.relay import EventRelay
from party.session import SessionStore, base_url, same_domain
from schemas.commands import EventType, PlayState, RoomUrl, SyncResponse, encode, sync_response

logger = get_logger(__name__)

AUTOPLAY_BLOCKED = "Autoplay blocked. Click play to sync."


class ReconciliationEngine:
    def __init__(self, store: SessionStore, manager: ConnectionManager, relay: EventRelay,
                 adapter: VideoControlAdapter, mailbox: Mailbox, config: Optional[PartyConfig] = None,
                 notifier: Optional[Notifier] = None, navigator: Optional[Navigator] = None,
                 local_url: Optional[str] = None):
        self.store = store
        self.manager = manager
        self.relay = relay
        self.adapter = adapter
        self.config = config or PartyConfig()
        self.notifier = notifier or LogNotifier()
        self.navigator = navigator or LogNavigator()
        self.local_url = local_url
        self.periodic_sync = self.config.periodic_sync
        self.last_sent_time: Optional[float] = None
        self.last_sent_state: Optional[PlayState] = None
        self._mailbox = mailbox
        self._sync_timer: Optional[Timer] = None
        self._redirect_timer: Optional[Timer] = None
        self._autoplay_warned = False
        relay.engine = self

    # -- lifecycle ------------------------------------------------------

    def start_periodic(self):
        if not self.periodic_sync or (self._sync_timer and self._sync_timer.active):
            return
        self._sync_timer = self._mailbox.call_every(self.config.sync_interval_ms, self.tick)

    def stop_periodic(self):
        if self._sync_timer:
            self._sync_timer.cancel()
        self._sync_timer = None

    def stop(self):
        for timer in (self._sync_timer, self._redirect_timer):
            if timer:
                timer.cancel()
        self._sync_timer = None
        self._redirect_timer = None
        self.last_sent_time = None
        self.last_sent_state = None
        self._autoplay_warned = False

    # -- applying remote state ------------------------------------------

    def _seek(self, seconds: float):
        self.relay.flags.arm(EventType.SEEK)
        self.adapter.seek_to(seconds)

    def _play(self):
        self.relay.flags.arm(EventType.PLAY)
        try:
            self.adapter.play()
        except PlaybackRejected as e:
            self.relay.flags.disarm(EventType.PLAY)
            logger.warning(f"Error playing: {e}")
            if not self._autoplay_warned:
                self._autoplay_warned = True
                self.notifier.notify(AUTOPLAY_BLOCKED, self.config.notification_ms)
            return
        self._autoplay_warned = False

    def _pause(self):
        self.relay.flags.arm(EventType.PAUSE)
        self.adapter.pause()

    def apply(self, event_type: EventType, current_time: Optional[float], state: Optional[PlayState] = None):
        local = self.adapter.get_state()
        logger.debug(f"Applying {event_type.value} t={current_time} state={state} (local {local})")
        if event_type is EventType.PLAY:
            if not local.playing:
                if current_time is not None:
                    self._seek(current_time)
                self._play()
        elif event_type is EventType.PAUSE:
            if local.playing:
                if current_time is not None:
                    self._seek(current_time)
                self._pause()
        elif event_type is EventType.SEEK:
            if current_time is not None and abs(local.current_time - current_time) > self.config.seek_tolerance_s:
                self._seek(current_time)
        elif event_type is EventType.SYNC:
            if current_time is not None and abs(local.current_time - current_time) > self.config.sync_tolerance_s:
                self._seek(current_time)
            if state is PlayState.PLAYING and not local.playing:
                self._play()
            elif state is PlayState.PAUSED and local.playing:
                self._pause()

    # -- sync requests --------------------------------------------------

    def on_sync_request(self, conn: Connection):
        session = self.store.session
        if session is None or not session.is_host:
            return
        state = self.adapter.get_state()
        logger.info(f"Received syncRequest from {conn.peer_id}, sending syncResponse")
        self.manager.send(conn, sync_response(state.current_time, state.playing))
        if session.base_url:
            self.manager.send(conn, RoomUrl(url=session.base_url))

    def on_room_url_request(self, conn: Connection):
        session = self.store.session
        if session is None or not session.is_host or not session.base_url:
            return
        logger.info(f"Received roomUrlRequest from {conn.peer_id}, sending {session.base_url}")
        self.manager.send(conn, RoomUrl(url=session.base_url, force_redirect=True))

    def on_sync_response(self, response: SyncResponse):
        if self.store.session is None or self.store.session.is_host:
            return
        current_time = response.data.current_time
        state = response.data.state
        logger.info(f"Received syncResponse => time={current_time}, state={state}")
        self.apply(EventType.SYNC, current_time, state)
        self.last_sent_time = current_time
        self.last_sent_state = state
        self.start_periodic()

    def tick(self):
        if self.store.session is None or not self.relay.enabled:
            return
        local = self.adapter.get_state()
        state = PlayState.of(local.playing)
        drifted = (
            self.last_sent_time is None
            or abs(local.current_time - self.last_sent_time) > self.config.reconcile_drift_s
        )
        if drifted or state is not self.last_sent_state:
            if self.relay.send_video_event(EventType.SYNC, local.current_time, state):
                self.last_sent_time = local.current_time
                self.last_sent_state = state

    # -- room URL -------------------------------------------------------

    def on_room_url(self, command: RoomUrl):
        session = self.store.session
        if session is None or session.is_host:
            return
        logger.info(f"Received room URL from host: {command.url}")
        room_url = self.store.set_room_url(command.url)
        current = base_url(self.local_url)
        if current == room_url:
            logger.debug("Current URL already matches room URL, no redirect needed")
            return
        if command.force_redirect and same_domain(self.local_url, room_url):
            logger.info(f"Host moved to a new page, redirecting to: {room_url}")
            self.notifier.notify("Host moved to a new page. Redirecting...", self.config.notification_ms)
            if self._redirect_timer:
                self._redirect_timer.cancel()
            self._redirect_timer = self._mailbox.call_later(self.config.redirect_delay_ms, self._redirect, room_url)
        else:
            self.notifier.offer_redirect(room_url)

    def _redirect(self, url: str):
        self._redirect_timer = None
        if self.store.session is None:
            return
        logger.info(f"Executing redirect to: {url}")
        self.local_url = url
        self.navigator.navigate(url)

    def navigated(self, url: str):
        """The local page moved to ``url``."""
        if url == self.local_url:
            return
        logger.info(f"URL changed from {self.local_url} to {url}")
        self.local_url = url
        session = self.store.session
        if session is None:
            return
        current = base_url(url)
        if session.is_host and not session.base_url:
            self._publish_room_url(url)
            return
        if not session.base_url or current == session.base_url:
            return
        if not session.is_host:
            logger.info("Client navigated away from room URL")
            self.notifier.offer_redirect(session.base_url)
        elif same_domain(session.base_url, current):
            logger.info(f"Host navigated on the same domain, updating room URL from {session.base_url} to {current}")
            self.notifier.notify("Host moved to new page, syncing all peers...", self.config.notification_ms)
            self._publish_room_url(url)
        else:
            logger.info("Host navigated to different domain, not updating room URL")

    def _publish_room_url(self, url: str):
        room_url = self.store.set_room_url(url)
        sent = self.manager.broadcast(encode(RoomUrl(url=room_url, force_redirect=True)))
        logger.info(f"Broadcast new room URL {room_url} to {sent} peers")
