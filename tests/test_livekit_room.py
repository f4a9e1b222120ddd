"""Tests for translating LiveKit room callbacks into room events."""

import asyncio

from livekit import rtc

from roomrecorder.livekit_room import LiveKitRoomClient, disconnect_reason_name, track_kind
from roomrecorder.media import RoomEvent, RoomState, TrackKind


def disconnect_with(reason, state=RoomState.CONNECTED):
    """Fire the SDK disconnect callback and return the emitted events and the final state."""
    async def scenario():
        client = LiveKitRoomClient('ws://localhost:7880')
        events = []
        client.on(RoomEvent.ROOM_ENDED, lambda: events.append(('room_ended',)))
        client.on(RoomEvent.DISCONNECTED, lambda name: events.append(('disconnected', name)))
        client._state = state

        client._disconnected(reason)
        return events, client.state

    return asyncio.run(scenario())


class TestDisconnected(object):
    def test_room_deleted_ends_the_room(self) -> None:
        events, state = disconnect_with(rtc.DisconnectReason.ROOM_DELETED)

        assert events == [('room_ended',)]
        assert state is RoomState.DISCONNECTED

    def test_client_initiated_has_no_reason(self) -> None:
        events, _ = disconnect_with(rtc.DisconnectReason.CLIENT_INITIATED)

        assert events == [('disconnected', None)]

    def test_other_reasons_are_named(self) -> None:
        events, _ = disconnect_with(rtc.DisconnectReason.DUPLICATE_IDENTITY)

        assert events == [('disconnected', 'DUPLICATE_IDENTITY')]

    def test_nothing_emitted_unless_connected(self) -> None:
        events, state = disconnect_with(rtc.DisconnectReason.ROOM_DELETED, state=RoomState.CONNECTING)

        assert events == []
        assert state is RoomState.DISCONNECTED


class TestMapping(object):
    def test_track_kind(self) -> None:
        assert track_kind(rtc.TrackKind.KIND_AUDIO) is TrackKind.AUDIO
        assert track_kind(rtc.TrackKind.KIND_VIDEO) is TrackKind.VIDEO
        assert track_kind(rtc.TrackKind.KIND_UNKNOWN) is TrackKind.DATA

    def test_disconnect_reason_name(self) -> None:
        assert disconnect_reason_name(None) is None
        assert disconnect_reason_name(rtc.DisconnectReason.SIGNAL_CLOSE) == 'SIGNAL_CLOSE'
