"""Local session identity: room id, role and room URL, with persistence."""
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from constants import CLIENT_PEER_PREFIX, HOST_PEER_PREFIX
from logging_config import get_logger
from party.storage import MemoryStorage, Storage

logger = get_logger(__name__)

SESSION_KEYS = ("roomId", "role", "participantCount", "roomUrl", "createdAt")
# left behind by older builds, cleared whenever a new room is created
STALE_KEYS = ("lastSuccessfulHostId", "lastRejectedHostId", "lastHostId", "hostPeerId", "hostRetryCount")

_BASE36 = string.digits + string.ascii_lowercase


class Role(str, Enum):
    HOST = "host"
    CLIENT = "client"


@dataclass
class Session:
    room_id: str
    role: Role
    base_url: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def is_host(self) -> bool:
        return self.role is Role.HOST

    @property
    def host_peer_id(self) -> str:
        return host_peer_id(self.room_id)


def random_base36(length: int) -> str:
    return "".join(random.choices(_BASE36, k=length))


def generate_room_id() -> str:
    return random_base36(8)


def host_peer_id(room_id: str) -> str:
    return f"{HOST_PEER_PREFIX}{room_id}"


def client_peer_id() -> str:
    return f"{CLIENT_PEER_PREFIX}{random_base36(6)}"


def base_url(url: Optional[str]) -> Optional[str]:
    """Strip query string and fragment."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError as e:
        logger.error(f"Error parsing URL {url!r}: {e}")
        return url
    if not parts.scheme:
        return url.split("?", 1)[0].split("#", 1)[0]
    path = parts.path or ("/" if parts.netloc else "")
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def same_domain(url1: Optional[str], url2: Optional[str]) -> bool:
    if not url1 or not url2:
        return False
    try:
        host1 = urlsplit(url1).hostname
        host2 = urlsplit(url2).hostname
    except ValueError as e:
        logger.error(f"Error comparing domains: {e}")
        return False
    return bool(host1) and host1 == host2


class SessionStore:
    """Owns the single live Session and mirrors it into storage."""

    def __init__(self, storage: Optional[Storage] = None):
        self.storage = storage or MemoryStorage()
        self.session: Optional[Session] = None
        self.participant_count = 1
        self._user_id: Optional[str] = None

    @property
    def user_id(self) -> str:
        """Stable random id for this participant, generated once and persisted."""
        if self._user_id is None:
            stored = self.storage.get(["userId"]).get("userId")
            if not stored:
                stored = random_base36(11) + random_base36(11)
                self.storage.set({"userId": stored})
            self._user_id = stored
        return self._user_id

    def restore(self) -> Optional[Session]:
        data = self.storage.get(SESSION_KEYS)
        if not data.get("roomId"):
            return None
        self.session = Session(
            room_id=data["roomId"],
            role=Role(data.get("role", Role.CLIENT.value)),
            base_url=data.get("roomUrl"),
            created_at=data.get("createdAt") or time.time(),
        )
        self.participant_count = data.get("participantCount") or 1
        logger.info(f"Restored room state: {self.session}")
        return self.session

    def create_room(self, room_id: Optional[str] = None, url: Optional[str] = None) -> Session:
        room_id = room_id or generate_room_id()
        session = Session(room_id=room_id, role=Role.HOST, base_url=base_url(url))
        self.storage.remove(SESSION_KEYS + STALE_KEYS)
        self.storage.set({
            "roomId": session.room_id,
            "role": session.role.value,
            "participantCount": 1,
            "roomUrl": session.base_url,
            "createdAt": session.created_at,
        })
        self.session = session
        self.participant_count = 1
        logger.info(f"Room created [{room_id}] with URL {session.base_url}")
        return session

    def join_room(self, room_id: str) -> Session:
        session = Session(room_id=room_id, role=Role.CLIENT)
        self.storage.remove(["roomUrl"])
        self.storage.set({
            "roomId": room_id,
            "role": session.role.value,
            "participantCount": 1,
            "createdAt": session.created_at,
        })
        self.session = session
        self.participant_count = 1
        logger.info(f"Joined room {room_id}")
        return session

    def leave_room(self, room_id: Optional[str] = None) -> bool:
        if self.session is None:
            return False
        if room_id is not None and room_id != self.session.room_id:
            logger.debug(f"Ignoring leave for {room_id}, current room is {self.session.room_id}")
            return False
        logger.info(f"Leaving room {self.session.room_id}")
        self.session = None
        self.participant_count = 1
        self.storage.remove(SESSION_KEYS)
        return True

    def set_role(self, role: Role) -> None:
        if self.session is None:
            return
        self.session.role = role
        self.storage.set({"role": role.value})

    def set_room_url(self, url: str) -> Optional[str]:
        if self.session is None:
            return None
        url = base_url(url)
        self.session.base_url = url
        self.storage.set({"roomUrl": url})
        logger.info(f"Room URL set to: {url}")
        return url

    def update_participant_count(self, count: int) -> None:
        self.participant_count = count
        self.storage.set({"participantCount": count})
