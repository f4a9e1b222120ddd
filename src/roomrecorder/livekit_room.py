"""
LiveKit implementation of the room connection.

Wraps ``livekit.rtc.Room`` and translates its events into the RoomEvent
vocabulary of the session controller.
"""

import inspect
from typing import Callable, Dict, List, Optional

from livekit import rtc

from .logger import get_logger
from .media import Participant, RoomClient, RoomEvent, RoomState, Track, TrackKind


def track_kind(kind) -> TrackKind:
    """Map a LiveKit track kind to TrackKind. Anything else is treated as data."""
    if kind == rtc.TrackKind.KIND_AUDIO:
        return TrackKind.AUDIO
    if kind == rtc.TrackKind.KIND_VIDEO:
        return TrackKind.VIDEO
    return TrackKind.DATA


def disconnect_reason_name(reason) -> Optional[str]:
    if reason is None:
        return None
    try:
        return rtc.DisconnectReason.Name(reason)
    except (ValueError, TypeError, AttributeError):
        return str(reason)


class LiveKitRoomClient(RoomClient):
    """
    Room connection backed by the LiveKit realtime SDK.

    Example:
        ```python
        room = LiveKitRoomClient("wss://livekit.example.com")
        await room.connect(token, "standup")
        room.on(RoomEvent.TRACK_SUBSCRIBED, on_track)
        ```
    """

    def __init__(self, url: str):
        self.url = url
        self._room = rtc.Room()
        self._sid = ''
        self._name = ''
        self._state = RoomState.DISCONNECTED
        self._tracks: Dict[str, Track] = {}
        self._handlers: Dict[str, List[Callable[..., None]]] = {}
        self._logger = get_logger('livekit')

        self._room.on("participant_connected", self._participant_connected)
        self._room.on("participant_disconnected", self._participant_disconnected)
        self._room.on("track_subscribed", self._track_subscribed)
        self._room.on("track_unsubscribed", self._track_unsubscribed)
        self._room.on("disconnected", self._disconnected)

    async def connect(self, token: str, name: str) -> None:
        self._state = RoomState.CONNECTING
        self._logger.debug(f"Connecting to {self.url} for room {name}")
        try:
            await self._room.connect(self.url, token, options=rtc.RoomOptions(auto_subscribe=True))
        except Exception:
            self._state = RoomState.DISCONNECTED
            raise
        self._state = RoomState.CONNECTED

        sid = self._room.sid
        if inspect.isawaitable(sid):
            sid = await sid
        self._sid = str(sid)
        self._name = self._room.name or name

    async def disconnect(self) -> None:
        if self._state is RoomState.DISCONNECTED:
            return
        await self._room.disconnect()
        self._state = RoomState.DISCONNECTED

    @property
    def sid(self) -> str:
        return self._sid

    @property
    def name(self) -> str:
        return self._name

    @property
    def local_participant_sid(self) -> str:
        return self._room.local_participant.sid

    @property
    def state(self) -> RoomState:
        return self._state

    @property
    def participants(self) -> List[Participant]:
        return [self._participant(p) for p in self._room.remote_participants.values()]

    def on(self, event: str, handler: Callable[..., None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def _emit(self, event: str, *args) -> None:
        for handler in list(self._handlers.get(event, ())):
            handler(*args)

    def _track(self, track) -> Track:
        wrapped = self._tracks.get(track.sid)
        if wrapped is None:
            wrapped = Track(id=track.sid, kind=track_kind(track.kind), source=track)
            self._tracks[track.sid] = wrapped
        return wrapped

    def _participant(self, participant) -> Participant:
        tracks = [
            self._track(publication.track)
            for publication in participant.track_publications.values()
            if publication.subscribed and publication.track is not None
        ]
        return Participant(identity=participant.identity, sid=participant.sid, tracks=tracks)

    # SDK callbacks

    def _participant_connected(self, participant) -> None:
        self._emit(RoomEvent.PARTICIPANT_CONNECTED, self._participant(participant))

    def _participant_disconnected(self, participant) -> None:
        self._emit(RoomEvent.PARTICIPANT_DISCONNECTED, self._participant(participant))

    def _track_subscribed(self, track, publication, participant) -> None:
        self._emit(RoomEvent.TRACK_SUBSCRIBED, self._track(track), self._participant(participant))

    def _track_unsubscribed(self, track, publication, participant) -> None:
        wrapped = self._track(track)
        self._tracks.pop(track.sid, None)
        self._emit(RoomEvent.TRACK_UNSUBSCRIBED, wrapped, self._participant(participant))

    def _disconnected(self, reason=None) -> None:
        was_connected = self._state is RoomState.CONNECTED
        self._state = RoomState.DISCONNECTED
        if not was_connected:
            return
        if reason == rtc.DisconnectReason.ROOM_DELETED:
            self._emit(RoomEvent.ROOM_ENDED)
            return
        if reason == rtc.DisconnectReason.CLIENT_INITIATED:
            self._emit(RoomEvent.DISCONNECTED, None)
            return
        self._emit(RoomEvent.DISCONNECTED, disconnect_reason_name(reason))
