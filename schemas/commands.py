"""Wire commands exchanged between party members.

Every message is a JSON-compatible dict with a ``type`` discriminator. The
models are frozen; build them with the helper constructors at the bottom and
send ``encode(cmd)``.
"""
import time
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from logging_config import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"
    SYNC = "sync"


class PlayState(str, Enum):
    PLAYING = "playing"
    PAUSED = "paused"

    @classmethod
    def of(cls, playing: bool) -> "PlayState":
        return cls.PLAYING if playing else cls.PAUSED


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class PlaybackData(_Command):
    current_time: Optional[float] = Field(None, alias="currentTime")
    state: Optional[PlayState] = None


class EventBody(_Command):
    event_type: EventType = Field(alias="eventType")
    data: PlaybackData = Field(default_factory=PlaybackData)
    timestamp: Optional[int] = None


class SyncRequest(_Command):
    type: Literal["syncRequest"] = "syncRequest"


class SyncResponse(_Command):
    type: Literal["syncResponse"] = "syncResponse"
    data: PlaybackData


class RoomUrl(_Command):
    type: Literal["roomUrl"] = "roomUrl"
    url: str
    force_redirect: bool = Field(False, alias="forceRedirect")


class RoomUrlRequest(_Command):
    type: Literal["roomUrlRequest"] = "roomUrlRequest"


class VideoEvent(_Command):
    type: Literal["videoEvent"] = "videoEvent"
    user_id: Optional[str] = Field(None, alias="userId")
    site: Optional[str] = None
    event: EventBody

    @property
    def event_type(self) -> EventType:
        return self.event.event_type

    @property
    def current_time(self) -> Optional[float]:
        return self.event.data.current_time

    @property
    def state(self) -> Optional[PlayState]:
        return self.event.data.state


class VideoEventAck(_Command):
    type: Literal["videoEventResponse"] = "videoEventResponse"
    data: Any = "OK"


class Ping(_Command):
    type: Literal["ping"] = "ping"
    timestamp: int


class Pong(_Command):
    type: Literal["pong"] = "pong"
    timestamp: int


class Leave(_Command):
    type: Literal["leave"] = "leave"


class AdminKick(_Command):
    type: Literal["adminCommand"] = "adminCommand"
    command: Literal["kick"] = "kick"


Command = Annotated[
    Union[
        SyncRequest,
        SyncResponse,
        RoomUrl,
        RoomUrlRequest,
        VideoEvent,
        VideoEventAck,
        Ping,
        Pong,
        Leave,
        AdminKick,
    ],
    Field(discriminator="type"),
]

_command_adapter = TypeAdapter(Command)


def now_ms() -> int:
    return int(time.time() * 1000)


def encode(command: _Command) -> dict:
    return command.model_dump(mode="json", by_alias=True, exclude_none=True)


def decode(data: Any):
    """Parse a received message, returning None for anything unrecognised."""
    if not isinstance(data, dict) or "type" not in data:
        logger.debug(f"Ignoring message without type: {data!r}")
        return None
    try:
        return _command_adapter.validate_python(data)
    except ValidationError as e:
        logger.debug(f"Ignoring unknown or malformed {data.get('type')!r} message: {e.error_count()} errors")
        return None


def video_event(event_type: EventType, current_time: Optional[float], user_id: Optional[str],
                site: Optional[str], state: Optional[PlayState] = None) -> VideoEvent:
    return VideoEvent(
        user_id=user_id,
        site=site,
        event=EventBody(
            event_type=event_type,
            data=PlaybackData(current_time=current_time, state=state),
            timestamp=now_ms(),
        ),
    )


def sync_response(current_time: float, playing: bool) -> SyncResponse:
    return SyncResponse(data=PlaybackData(current_time=current_time, state=PlayState.of(playing)))
