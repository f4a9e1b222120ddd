"""Shared fakes for the Room Recorder tests."""

import asyncio
from typing import Dict, List, Optional

import pytest

from roomrecorder.codec import decode
from roomrecorder.errors import BridgeError
from roomrecorder.media import (
    CaptureState,
    MediaBackend,
    MediaCapture,
    Participant,
    ResizeWatch,
    RoomClient,
    RoomEvent,
    RoomState,
    Track,
    TrackKind,
)
from roomrecorder.protocol import HostEndpoints


async def settle(rounds: int = 50) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_track(track_id: str, kind: TrackKind) -> Track:
    return Track(id=track_id, kind=kind, source=f"source-{track_id}")


def make_participant(identity: str, *tracks: Track) -> Participant:
    return Participant(identity=identity, sid=f"PA-{identity}", tracks=list(tracks))


class FakeCapture(MediaCapture):
    """In-memory capture: bytes fed while recording are delivered on flush, request_data or stop."""

    def __init__(self, stream, mime_type: str, bits_per_second: int):
        super().__init__()
        self.stream = stream
        self.mime_type = mime_type
        self.bits_per_second = bits_per_second
        self.timeslice_ms: Optional[int] = None
        self.pending = bytearray()
        self.calls: List[str] = []
        self._state = CaptureState.INACTIVE

    @property
    def state(self) -> CaptureState:
        return self._state

    def start(self, timeslice_ms: int) -> None:
        self.calls.append('start')
        self.timeslice_ms = timeslice_ms
        self._state = CaptureState.RECORDING
        asyncio.get_running_loop().call_soon(self.on_start)

    def feed(self, data: bytes) -> None:
        if self._state is CaptureState.RECORDING:
            self.pending.extend(data)

    def flush(self) -> None:
        self._deliver()

    def pause(self) -> None:
        self.calls.append('pause')
        if self._state is CaptureState.RECORDING:
            self._state = CaptureState.PAUSED
            asyncio.get_running_loop().call_soon(self.on_pause)

    def request_data(self) -> None:
        self.calls.append('request_data')
        self._deliver()

    def stop(self) -> None:
        self.calls.append('stop')
        if self._state is CaptureState.INACTIVE:
            return
        self._state = CaptureState.INACTIVE
        self._deliver()
        asyncio.get_running_loop().call_soon(self.on_stop)

    def _deliver(self) -> None:
        data = bytes(self.pending)
        self.pending.clear()
        asyncio.get_running_loop().call_soon(self.on_data_available, data)


class FakeResizeWatch(ResizeWatch):
    def __init__(self, track: Track, callback):
        self.track = track
        self.callback = callback
        self.closed = False

    def fire(self) -> None:
        if not self.closed:
            self.callback()

    def close(self) -> None:
        self.closed = True


class FakeBackend(MediaBackend):
    def __init__(self, supported=None):
        self.supported = set(supported if supported is not None else (
            'video/webm;codecs=h264',
            'video/webm;codecs=vp8',
            'audio/webm;codecs=opus',
        ))
        self.captures: List[FakeCapture] = []
        self.watches: List[FakeResizeWatch] = []

    def is_type_supported(self, mime_type: str) -> bool:
        return mime_type in self.supported

    def create_stream(self, sources):
        return list(sources)

    def silent_audio_track(self):
        return 'silence'

    def add_track(self, stream, source) -> None:
        stream.append(source)

    def create_capture(self, stream, mime_type: str, bits_per_second: int) -> FakeCapture:
        capture = FakeCapture(stream, mime_type, bits_per_second)
        self.captures.append(capture)
        return capture

    def watch_resize(self, track: Track, callback) -> FakeResizeWatch:
        watch = FakeResizeWatch(track, callback)
        self.watches.append(watch)
        return watch

    def captures_for(self, track: Track) -> List[FakeCapture]:
        return [c for c in self.captures if track.source in c.stream]


class FakeHost(HostEndpoints):
    """Host endpoints keeping every recording in memory."""

    def __init__(self):
        self.files: Dict[str, bytearray] = {}
        self.created: List[tuple] = []
        self.appends: List[tuple] = []
        self.close_requests: List[Optional[str]] = []
        self.logs: List[tuple] = []
        # Ordered (endpoint, filename) log of create and append calls.
        self.events: List[tuple] = []
        self.fail_appends = 0

    def log(self, level: str, message: str) -> None:
        self.logs.append((level, message))

    async def parent_close(self, error: Optional[str] = None) -> None:
        self.close_requests.append(error)

    async def create_recording(self, filepath, metapath, mime_type: str) -> None:
        self.created.append((list(filepath), list(metapath), mime_type))
        self.files['/'.join(filepath)] = bytearray()
        self.events.append(('create', '/'.join(filepath)))

    async def append_recording(self, filepath, chunk: str, start: float) -> int:
        await asyncio.sleep(0)
        if self.fail_appends > 0:
            self.fail_appends -= 1
            raise BridgeError("append failed")
        data = decode(chunk)
        name = '/'.join(filepath)
        self.files[name].extend(data)
        self.appends.append((name, len(data)))
        self.events.append(('append', name))
        return len(data)


class FakeRoom(RoomClient):
    def __init__(self, participants=None, name: str = "room", sid: str = "RM123", local_sid: str = "PA000"):
        self._participants: Dict[str, Participant] = {p.identity: p for p in participants or []}
        self._name = name
        self._sid = sid
        self._local_sid = local_sid
        self._state = RoomState.DISCONNECTED
        self._handlers: Dict[str, list] = {}
        self.connect_calls: List[tuple] = []
        self.disconnect_calls = 0

    async def connect(self, token: str, name: str) -> None:
        self.connect_calls.append((token, name))
        self._state = RoomState.CONNECTED

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._state = RoomState.DISCONNECTED

    @property
    def sid(self) -> str:
        return self._sid

    @property
    def name(self) -> str:
        return self._name

    @property
    def local_participant_sid(self) -> str:
        return self._local_sid

    @property
    def state(self) -> RoomState:
        return self._state

    @property
    def participants(self) -> List[Participant]:
        return list(self._participants.values())

    def on(self, event: str, handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args) -> None:
        for handler in self._handlers.get(event, []):
            handler(*args)

    def join(self, participant: Participant) -> None:
        self._participants[participant.identity] = participant
        self.emit(RoomEvent.PARTICIPANT_CONNECTED, participant)

    def leave(self, identity: str) -> None:
        participant = self._participants.pop(identity)
        self.emit(RoomEvent.PARTICIPANT_DISCONNECTED, participant)

    def subscribe(self, identity: str, track: Track) -> None:
        participant = self._participants[identity]
        participant.tracks.append(track)
        self.emit(RoomEvent.TRACK_SUBSCRIBED, track, participant)

    def unsubscribe(self, identity: str, track: Track) -> None:
        participant = self._participants[identity]
        participant.tracks.remove(track)
        self.emit(RoomEvent.TRACK_UNSUBSCRIBED, track, participant)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
