"""One participant's watch party: session, connections, relay and reconciliation.

Usage::

    party = WatchParty(LocalNetwork(), SimulatedPlayer())
    await party.start()
    room = party.create_room(url="https://svc/show/ep1")
    ...
    await party.stop()
"""
from typing import Dict, Optional

from logging_config import get_logger
from party.adapters import VideoControlAdapter
from party.config import PartyConfig
from party.connection import ConnectionManager, ConnectionStatus, Liveness, Peer
from party.mailbox import Mailbox
from party.notify import LogNavigator, LogNotifier, Navigator, Notifier
from party.reconcile import ReconciliationEngine
from party.relay import EventRelay
from party.session import Session, SessionStore, base_url
from party.transport import TransportFactory

logger = get_logger(__name__)


class WatchParty:
    def __init__(self, transport_factory: TransportFactory, adapter: VideoControlAdapter,
                 store: Optional[SessionStore] = None, config: Optional[PartyConfig] = None,
                 notifier: Optional[Notifier] = None, navigator: Optional[Navigator] = None,
                 site: Optional[str] = None, url: Optional[str] = None):
        self.config = config or PartyConfig()
        self.store = store or SessionStore()
        self.adapter = adapter
        self.notifier = notifier or LogNotifier()
        self.navigator = navigator or LogNavigator()
        self.mailbox = Mailbox()
        self.manager = ConnectionManager(self.store, transport_factory, self.mailbox, self.config)
        self.relay = EventRelay(self.store, self.manager, adapter, self.mailbox, self.config, site=site)
        self.engine = ReconciliationEngine(
            self.store, self.manager, self.relay, adapter, self.mailbox, self.config,
            notifier=self.notifier, navigator=self.navigator, local_url=url,
        )
        self.manager.on("status", self._on_status)
        self.manager.on("kicked", lambda: self.mailbox.post(self.leave_room))
        self._started = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self):
        if self._started:
            return
        self._started = True
        self.mailbox.start()
        self.relay.attach()
        if self.store.session is None and self.store.restore() is None:
            logger.info("Not in any room")
            return
        logger.info(f"Already in a room: {self.store.session.room_id}, reconnecting")
        self.mailbox.post(self._enter_room)

    async def stop(self):
        if not self._started:
            return
        self._started = False
        self.manager.teardown()
        self.engine.stop()
        self.relay.reset()
        self.relay.detach()
        await self.mailbox.stop()

    # -- room lifecycle -------------------------------------------------

    def create_room(self, room_id: Optional[str] = None, url: Optional[str] = None) -> Session:
        session = self.store.create_room(room_id, url or self.engine.local_url)
        if url:
            self.engine.local_url = url
        self.mailbox.post(self._enter_room)
        return session

    def join_room(self, room_id: str) -> Session:
        session = self.store.join_room(room_id)
        self.mailbox.post(self._enter_room)
        return session

    def leave_room(self) -> bool:
        """Stop all timers and connections synchronously, then forget the session."""
        if self.store.session is None:
            return False
        self.manager.reset()
        self.engine.stop()
        self.relay.reset()
        self.relay.enabled = False
        return self.store.leave_room()

    def _enter_room(self):
        session = self.store.session
        if session is None:
            return
        self.manager.reset()
        self.engine.stop()
        self.relay.reset()
        self.relay.enabled = True
        self.manager.initialize()
        if session.is_host:
            self.engine.start_periodic()

    # -- commands from the UI -------------------------------------------

    def kick(self, peer_id: str):
        self.mailbox.post(self._kick, peer_id)

    def _kick(self, peer_id: str):
        self.manager.kick(peer_id, self.adapter.get_state().current_time)

    def navigated(self, url: str):
        self.mailbox.post(self.engine.navigated, url)

    def set_periodic_sync(self, enabled: bool):
        self.engine.periodic_sync = enabled
        if not enabled:
            self.engine.stop_periodic()
        elif self.store.session is not None and (self.store.session.is_host or self.engine.last_sent_state is not None):
            self.engine.start_periodic()

    def _on_status(self, status: ConnectionStatus, text: str):
        if status.terminal:
            self.notifier.notify(text, self.config.notification_ms)

    # -- read-only views ------------------------------------------------

    @property
    def session(self) -> Optional[Session]:
        return self.store.session

    @property
    def participant_count(self) -> int:
        return self.store.participant_count

    @property
    def status(self) -> ConnectionStatus:
        return self.manager.status

    @property
    def status_text(self) -> str:
        session = self.store.session
        if session is None or self.manager.status is not ConnectionStatus.CONNECTED:
            return self.manager.status_text
        label = "Connected (Host)" if session.is_host else "Connected"
        text = f"{label}: {session.room_id} ({self.participant_count} in room)"
        if session.base_url and self.engine.local_url:
            if base_url(self.engine.local_url) != session.base_url:
                text += " (URL mismatch)"
        return text

    @property
    def liveness(self) -> Liveness:
        return self.manager.liveness

    def peer_registry(self) -> Dict[str, Peer]:
        return self.manager.peer_registry()
