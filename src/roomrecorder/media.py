"""
Interfaces to the session's external collaborators.

The session controller and the recorders only talk to the conferencing SDK
and to the capture primitive through these classes, so they run unchanged
against LiveKit/PyAV (see livekit_room and avcapture) or against in-memory
fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional


class TrackKind(Enum):
    """Media kind of a track."""
    AUDIO = "audio"
    VIDEO = "video"
    DATA = "data"


class RoomState(Enum):
    """Connection state of a room."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class RoomEvent:
    """Names of the room events the controller listens to."""
    PARTICIPANT_CONNECTED = "participant_connected"        # (participant)
    PARTICIPANT_DISCONNECTED = "participant_disconnected"  # (participant)
    TRACK_SUBSCRIBED = "track_subscribed"                  # (track, participant)
    TRACK_UNSUBSCRIBED = "track_unsubscribed"              # (track, participant)
    DISCONNECTED = "disconnected"                          # (reason)
    ROOM_ENDED = "room_ended"                              # ()


@dataclass
class Track:
    """A subscribed remote track. ``source`` is the SDK object handed to the capture backend."""
    id: str
    kind: TrackKind
    source: Any = None

    @property
    def is_data(self) -> bool:
        return self.kind is TrackKind.DATA


@dataclass
class Participant:
    """A remote participant and its currently subscribed tracks."""
    identity: str
    sid: str
    tracks: List[Track] = field(default_factory=list)


class RoomClient(ABC):
    """Connection to one conferencing room."""

    @abstractmethod
    async def connect(self, token: str, name: str) -> None:
        """Join the room. Raises on failure."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Leave the room."""

    @property
    @abstractmethod
    def sid(self) -> str:
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def local_participant_sid(self) -> str:
        ...

    @property
    @abstractmethod
    def state(self) -> RoomState:
        ...

    @property
    @abstractmethod
    def participants(self) -> List[Participant]:
        """Remote participants currently in the room."""

    @abstractmethod
    def on(self, event: str, handler: Callable[..., None]) -> None:
        """Register a synchronous handler for a RoomEvent."""


class CaptureState(Enum):
    """State of the capture primitive, mirroring MediaRecorder."""
    INACTIVE = "inactive"
    RECORDING = "recording"
    PAUSED = "paused"


class MediaCapture(ABC):
    """
    Capture primitive shaped like the browser's MediaRecorder.

    Acknowledgments are delivered through the ``on_*`` callbacks, always
    scheduled on the event loop rather than invoked from inside the method
    that caused them. After ``stop()`` the capture delivers any remaining data
    through ``on_data_available`` before ``on_stop``.
    """

    def __init__(self) -> None:
        self.on_start: Optional[Callable[[], None]] = None
        self.on_data_available: Optional[Callable[[bytes], None]] = None
        self.on_pause: Optional[Callable[[], None]] = None
        self.on_stop: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[BaseException], None]] = None

    @property
    @abstractmethod
    def state(self) -> CaptureState:
        ...

    @abstractmethod
    def start(self, timeslice_ms: int) -> None:
        """Start capturing; data is delivered every ``timeslice_ms``."""

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def request_data(self) -> None:
        """Deliver whatever is buffered now (possibly zero bytes)."""

    @abstractmethod
    def stop(self) -> None:
        ...


class ResizeWatch(ABC):
    """Handle returned by MediaBackend.watch_resize."""

    @abstractmethod
    def close(self) -> None:
        ...


class MediaBackend(ABC):
    """Factory for capture streams and capture primitives."""

    @abstractmethod
    def is_type_supported(self, mime_type: str) -> bool:
        ...

    @abstractmethod
    def create_stream(self, sources: List[Any]) -> Any:
        """Bundle track sources into one capture stream."""

    @abstractmethod
    def silent_audio_track(self) -> Any:
        """A fresh silent audio source, added to video-only streams."""

    @abstractmethod
    def add_track(self, stream: Any, source: Any) -> None:
        ...

    @abstractmethod
    def create_capture(self, stream: Any, mime_type: str, bits_per_second: int) -> MediaCapture:
        ...

    @abstractmethod
    def watch_resize(self, track: Track, callback: Callable[[], None]) -> ResizeWatch:
        """Call ``callback`` whenever the video track's frame size changes."""
