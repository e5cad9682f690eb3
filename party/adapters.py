"""Video control adapters.

The protocol drives every player through the same small surface:
``play()``, ``pause()``, ``seek_to(seconds)`` and ``get_state()``, and listens
for the raw ``played``, ``paused`` and ``seeked`` events the player emits. One
adapter per site is picked when the party starts (see ``adapter_for``).
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urlsplit

from logging_config import get_logger
from party.emitter import Emitter
from party.errors import PlaybackRejected

logger = get_logger(__name__)

PLAYED = "played"
PAUSED = "paused"
SEEKED = "seeked"

# hostname fragment -> site id, first match wins
SITE_PATTERNS = (
    ("netflix.com", "netflix"),
    ("hotstar.com", "hotstar"),
    ("primevideo.com", "primevideo"),
    ("youtube.com", "youtube"),
    ("disneyplus.com", "disney"),
    ("hulu.com", "hulu"),
    ("hbomax.com", "hbomax"),
    ("max.com", "hbomax"),
    ("animepahe.ru", "animepahe"),
    ("crunchyroll.com", "crunchyroll"),
)


@dataclass(frozen=True)
class PlaybackState:
    current_time: float
    playing: bool


def detect_site(url: Optional[str]) -> str:
    """Map a page URL to a site id, falling back to ``generic``."""
    if not url:
        return "generic"
    host = (urlsplit(url).hostname or "").lower()
    for fragment, site in SITE_PATTERNS:
        if host == fragment or host.endswith("." + fragment):
            return site
    return "generic"


class VideoControlAdapter(Emitter, ABC):
    site = "generic"

    @abstractmethod
    def play(self) -> None:
        """Start playback; raises PlaybackRejected when the environment refuses."""

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def seek_to(self, seconds: float) -> None:
        ...

    @abstractmethod
    def get_state(self) -> PlaybackState:
        ...


class SimulatedPlayer(VideoControlAdapter):
    """A clock-driven player: position advances while playing.

    Used for headless parties and tests. Commands fire the same raw events a
    real player would, synchronously.
    """

    def __init__(self, current_time: float = 0.0, playing: bool = False, duration: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic, site: str = "generic"):
        super().__init__()
        self._clock = clock
        self._position = current_time
        self._anchor = clock()
        self._playing = playing
        self.duration = duration
        self.site = site
        self.autoplay_blocked = False

    def _now_position(self) -> float:
        position = self._position
        if self._playing:
            position += self._clock() - self._anchor
        if self.duration is not None:
            position = min(position, self.duration)
        return position

    def play(self) -> None:
        if self.autoplay_blocked:
            raise PlaybackRejected("play() blocked by autoplay policy")
        if self._playing:
            return
        self._position = self._now_position()
        self._anchor = self._clock()
        self._playing = True
        self.emit(PLAYED)

    def pause(self) -> None:
        if not self._playing:
            return
        self._position = self._now_position()
        self._playing = False
        self.emit(PAUSED)

    def seek_to(self, seconds: float) -> None:
        self._position = max(0.0, float(seconds))
        self._anchor = self._clock()
        self.emit(SEEKED)

    def get_state(self) -> PlaybackState:
        return PlaybackState(current_time=self._now_position(), playing=self._playing)


class MessageBridgeAdapter(VideoControlAdapter):
    """Drives a black-box player by posting control messages to it.

    ``post_message`` receives ``{"type": "PLAYER_CONTROL", "action": ..., "value": ...}``
    dicts (seek values in milliseconds); ``read_state`` reports what the page's
    media element shows. The bridge forwards native events through
    ``notify_native``.
    """

    def __init__(self, post_message: Callable[[dict], None], read_state: Callable[[], PlaybackState],
                 site: str = "netflix", message_type: str = "PLAYER_CONTROL"):
        super().__init__()
        self._post = post_message
        self._read_state = read_state
        self.site = site
        self.message_type = message_type

    def _send(self, action: str, value=None):
        message = {"type": self.message_type, "action": action}
        if value is not None:
            message["value"] = value
        try:
            self._post(message)
        except Exception as e:
            logger.warning(f"{self.site} bridge {action} failed: {e}")
            if action == "PLAY":
                raise PlaybackRejected(str(e)) from e

    def play(self) -> None:
        self._send("PLAY")

    def pause(self) -> None:
        self._send("PAUSE")

    def seek_to(self, seconds: float) -> None:
        self._send("SEEK", int(seconds * 1000))

    def get_state(self) -> PlaybackState:
        return self._read_state()

    def notify_native(self, event: str) -> None:
        if event in (PLAYED, PAUSED, SEEKED):
            self.emit(event)


_registry: Dict[str, Callable[..., VideoControlAdapter]] = {}


def register_adapter(site: str, factory: Callable[..., VideoControlAdapter]) -> None:
    _registry[site] = factory


def adapter_for(site: str, **kwargs) -> VideoControlAdapter:
    """Build the adapter registered for ``site``, or the generic one."""
    factory = _registry.get(site) or _registry["generic"]
    adapter = factory(**kwargs)
    adapter.site = site
    logger.debug(f"Selected {type(adapter).__name__} for site {site}")
    return adapter


register_adapter("generic", SimulatedPlayer)
register_adapter("netflix", MessageBridgeAdapter)
