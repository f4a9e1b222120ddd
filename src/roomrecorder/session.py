"""
Recording-session controller.

Runs inside the sandboxed context. Owns the room connection, creates one
Recorder per subscribed audio/video track, restarts video recorders when the
track's frame size changes, and drains every recorder before leaving the
room on shutdown.
"""

import asyncio
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set, Tuple

from .errors import BridgeError
from .logger import get_logger, get_scoped_logger, indent
from .media import MediaBackend, Participant, ResizeWatch, RoomClient, RoomEvent, RoomState, Track, TrackKind
from .occupancy import OccupancyTracker
from .protocol import RunResult, ShutdownResult
from .recorder import (
    Recorder,
    RecorderCounter,
    RecorderSettings,
    recording_key,
    recording_paths,
    select_mime_type,
)


TRACK_CLASS_NAME = {
    TrackKind.AUDIO: 'RemoteAudioTrack',
    TrackKind.VIDEO: 'RemoteVideoTrack',
}


@dataclass
class SessionSettings:
    """Settings the session receives from the host's session page."""
    output_dir: str = "recordings"
    starting_timeout: float = 600.0
    ending_timeout: float = 60.0
    recorder: RecorderSettings = field(default_factory=RecorderSettings)

    @classmethod
    def from_page(cls, page: Dict[str, Any]) -> 'SessionSettings':
        recording = page.get('recording', {})
        room = page.get('room', {})
        defaults = RecorderSettings()
        return cls(
            output_dir=recording.get('output_dir', 'recordings'),
            starting_timeout=float(room.get('starting_timeout', 600.0)),
            ending_timeout=float(room.get('ending_timeout', 60.0)),
            recorder=RecorderSettings(
                flush_interval=float(recording.get('flush_interval', defaults.flush_interval)),
                video_bits_per_second=int(recording.get('video_bits_per_second', defaults.video_bits_per_second)),
                preferred_video_codec=recording.get('preferred_video_codec', defaults.preferred_video_codec),
                fallback_video_codec=recording.get('fallback_video_codec', defaults.fallback_video_codec),
                audio_codec=recording.get('audio_codec', defaults.audio_codec),
                max_append_bytes=int(recording.get('max_append_bytes', defaults.max_append_bytes)),
            ),
        )


class SessionState:
    """Mutable state of one recording session."""

    def __init__(self):
        # Recorders by track id.
        self.recorders: Dict[str, Recorder] = {}
        # Recorders removed from ``recorders`` whose drain is still running.
        self.draining: Set[Recorder] = set()
        # Subscription index per (identity, kind) key.
        self.subscription_counts: Dict[str, int] = {}
        # Resize watcher per participant identity: (track id, watch).
        self.resize_watches: Dict[str, Tuple[str, ResizeWatch]] = {}
        self.counter = RecorderCounter()

    def next_subscription_index(self, key: str) -> int:
        index = self.subscription_counts.get(key, 0) + 1
        self.subscription_counts[key] = index
        return index

    def counted_recorders(self) -> int:
        """Recorders that incremented the Active Recorder Count and have not decremented it yet."""
        live = list(self.recorders.values()) + list(self.draining)
        return sum(1 for recorder in live if recorder.counted)


class SessionController:
    """
    Drives one room recording session.

    Example:
        ```python
        controller = SessionController(room, backend, host, settings)
        result = await controller.run(token, "standup")
        ...
        await controller.shutdown()
        ```
    """

    def __init__(
        self,
        room: RoomClient,
        backend: MediaBackend,
        host,
        settings: Optional[SessionSettings] = None
    ):
        """
        Args:
            room: Room connection (not yet connected).
            backend: Capture backend for the recorders.
            host: Host endpoints (parent_close, create_recording, append_recording).
            settings: Session settings from the session page.
        """
        self.room = room
        self.backend = backend
        self.host = host
        self.settings = settings or SessionSettings()
        self.state = SessionState()
        self.tracker = OccupancyTracker(
            self._on_idle,
            starting_timeout=self.settings.starting_timeout,
            ending_timeout=self.settings.ending_timeout,
        )
        self.room_name: Optional[str] = None

        self._tracks: Dict[str, Tuple[Track, str]] = {}
        self._restarting: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        self._closed = False
        self._shutdown_task: Optional[asyncio.Future] = None
        self._logger = get_logger('session')

    @property
    def is_closing(self) -> bool:
        return self._closing

    @property
    def active_recorder_count(self) -> int:
        return self.state.counter.value

    async def run(self, token: str, room_name: str) -> RunResult:
        """
        Connect to the room and start recording every present track.

        Returns:
            Room SID and local participant SID.
        """
        self._logger.debug('Connecting to Room...')
        await self.room.connect(token, room_name)
        self.room_name = self.room.name or room_name
        result = RunResult(room_sid=self.room.sid, local_participant_sid=self.room.local_participant_sid)
        self._logger.info(
            f"Connected to Room {result.room_sid} as LocalParticipant {result.local_participant_sid}."
        )
        if self._closing:
            return result

        participants = self.room.participants
        if participants:
            self._logger.info(self._describe(participants))

        self.room.on(RoomEvent.PARTICIPANT_CONNECTED, self._on_participant_connected)
        self.room.on(RoomEvent.PARTICIPANT_DISCONNECTED, self._on_participant_disconnected)
        self.room.on(RoomEvent.TRACK_SUBSCRIBED, self._on_track_subscribed)
        self.room.on(RoomEvent.TRACK_UNSUBSCRIBED, self._on_track_unsubscribed)
        self.room.on(RoomEvent.DISCONNECTED, self._on_disconnected)
        self.room.on(RoomEvent.ROOM_ENDED, self._on_room_ended)

        self.tracker.room_joined(p.identity for p in participants)
        for participant in participants:
            for track in participant.tracks:
                self._track_subscribed(track, participant)

        return result

    async def shutdown(self) -> ShutdownResult:
        """
        Stop every recorder, wait until all of them drained, then leave the room.

        Safe to call several times; later calls wait for the first one.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        return await asyncio.shield(self._shutdown_task)

    async def close(self) -> None:
        """Final teardown, after shutdown() has drained the session."""
        if self._closed:
            return
        self._closed = True
        self._closing = True
        self.tracker.stop()
        self._close_watches()
        self._logger.info('Session closed.')

    async def stop_track(
        self,
        track_id: str,
        on_stopped: Optional[Callable[[int], None]] = None,
        reason: str = "Unsubscribe"
    ) -> None:
        """Stop and drain the recorder of a track, if one is running."""
        self._logger.info(f"{reason}: stopping recorder of track {track_id}")
        recorder = self.state.recorders.pop(track_id, None)
        if recorder is None or recorder.is_stopped:
            self._logger.error(
                f"Recorder for track {track_id} was not found or is not recording. "
                f"Maybe already unsubscribed?"
            )
            return

        self.state.draining.add(recorder)
        try:
            await recorder.stop(on_stopped)
        finally:
            self.state.draining.discard(recorder)

    async def _shutdown(self) -> ShutdownResult:
        self._closing = True
        self.tracker.stop()
        self._close_watches()

        track_ids = list(self.state.recorders)
        draining = list(self.state.draining)

        if track_ids or draining:
            self._logger.info('Shutting down any remaining recorders...')
            self._reconcile_count()

            def stopped(count: int) -> None:
                if count <= 0:
                    self._logger.info('All recorders stopped.')

            await asyncio.gather(
                *(self.stop_track(track_id, stopped, reason="Shutdown") for track_id in track_ids),
                *(recorder.stop() for recorder in draining),
            )
            self._reconcile_count()
            await self.state.counter.wait_zero()
        else:
            self._logger.info('No active recorders to shut down.')

        disconnected = False
        if self.room.state is not RoomState.DISCONNECTED:
            self._logger.info('Disconnecting from Room...')
            try:
                await self.room.disconnect()
                disconnected = True
            except Exception as e:
                self._logger.error(f"Disconnecting from Room failed: {e}", exc_info=True)

        return ShutdownResult(recorders_stopped=len(track_ids) + len(draining), room_disconnected=disconnected)

    def _reconcile_count(self) -> None:
        expected = self.state.counted_recorders()
        actual = self.state.counter.value
        if expected != actual:
            self._logger.error(f"Active recorder count {actual} doesn't match recorder size {expected}.")
            self._logger.error('Will reset active recorder count to match.')
            self.state.counter.resync(expected)

    def _describe(self, participants) -> str:
        count = len(participants)
        message = (
            f"There {'are' if count > 1 else 'is'} {count} "
            f"RemoteParticipant{'s' if count > 1 else ''} in the Room:\n\n"
        )
        for participant in participants:
            message += f"  - RemoteParticipant {participant.sid}\n"
            for track in participant.tracks:
                if track.is_data:
                    continue
                message += f"    - {TRACK_CLASS_NAME[track.kind]} {track.id}\n"
        return message

    # Room events

    def _on_participant_connected(self, participant: Participant) -> None:
        if self._closing:
            return
        self._logger.info(f"RemoteParticipant {participant.sid} connected.")
        self.tracker.participant_connected(participant.identity)

    def _on_participant_disconnected(self, participant: Participant) -> None:
        if self._closing:
            return
        self._logger.info(f"RemoteParticipant {participant.sid} disconnected.")
        self.tracker.participant_disconnected(participant.identity)

    def _on_track_subscribed(self, track: Track, participant: Participant) -> None:
        if self._closing or track.is_data:
            return
        self._logger.info(
            f"Subscribed to {TRACK_CLASS_NAME[track.kind]} {track.id} "
            f"published by RemoteParticipant {participant.sid}"
        )
        self._track_subscribed(track, participant)

    def _on_track_unsubscribed(self, track: Track, participant: Participant) -> None:
        if self._closing or track.is_data:
            return
        self._logger.info(
            f"Unsubscribed from {TRACK_CLASS_NAME[track.kind]} {track.id} "
            f"published by RemoteParticipant {participant.sid}"
        )
        self.tracker.track_unsubscribed(participant.identity, track.id)
        self._tracks.pop(track.id, None)

        watched = self.state.resize_watches.get(participant.identity)
        if watched is not None and watched[0] == track.id:
            del self.state.resize_watches[participant.identity]
            watched[1].close()

        self._spawn(self.stop_track(track.id))

    def _on_disconnected(self, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._logger.info('Disconnected from Room.')
        self._request_close(reason)

    def _on_room_ended(self) -> None:
        if self._closing:
            return
        self._logger.info('Room ended. Closing everything down.')
        self._request_close('Room ended')

    def _on_idle(self) -> None:
        self._request_close(None)

    # Recording

    def _track_subscribed(self, track: Track, participant: Participant) -> None:
        if track.is_data:
            return
        self.tracker.track_subscribed(participant.identity, track.id)
        self._tracks[track.id] = (track, participant.identity)
        self._spawn(self._record(track, participant.identity))

    async def _record(self, track: Track, identity: str) -> None:
        if track.id in self.state.recorders:
            self._logger.debug(f"Track {track.id} is already being recorded.")
            return
        if self._closing:
            return
        if track.kind is TrackKind.VIDEO:
            self._watch_resize(track, identity)
        await self._start_recorder(track, identity)

    async def _start_recorder(self, track: Track, identity: str) -> Optional[Recorder]:
        if self._closing:
            self._logger.info(f"Session is closing, not recording track {track.id}.")
            return None

        settings = self.settings.recorder
        mime_type = select_mime_type(track.kind, self.backend, settings)
        index = self.state.next_subscription_index(recording_key(identity, track.kind))
        filepath, metapath = recording_paths(
            self.settings.output_dir, self.room_name or self.room.name, identity, track.kind, index
        )

        recorder = Recorder(
            track, identity, index, filepath, metapath, mime_type,
            self.host, self.backend, self.state.counter, settings
        )
        self.state.recorders[track.id] = recorder
        try:
            await recorder.start()
        except Exception as e:
            self._logger.error(f"Could not start recorder for {recorder.filename}: {e}", exc_info=True)
            if self.state.recorders.get(track.id) is recorder:
                del self.state.recorders[track.id]
            return None
        return recorder

    def _watch_resize(self, track: Track, identity: str) -> None:
        logger = get_scoped_logger(identity, 'session')
        previous = self.state.resize_watches.pop(identity, None)
        if previous is not None:
            previous[1].close()
            logger.info(f"Replaced resize watcher for {identity}")
        else:
            logger.info(f"Created a new resize watcher for {identity}")

        watch = self.backend.watch_resize(track, lambda: self._on_resize(track, identity))
        self.state.resize_watches[identity] = (track.id, watch)

    def _on_resize(self, track: Track, identity: str) -> None:
        if self._closing:
            return
        if track.id in self._restarting:
            self._logger.debug(f"Restart of track {track.id} already in progress.")
            return
        self._logger.info(
            f"Video for participant {identity} has resized. Restarting recording on the same track."
        )
        self._restarting.add(track.id)
        self._spawn(self._restart(track, identity))

    async def _restart(self, track: Track, identity: str) -> None:
        try:
            await self.stop_track(track.id, reason="Resize")
            if self._closing or track.id not in self._tracks:
                self._logger.info(f"Not restarting track {track.id}: it is gone or the session is closing.")
                return
            await self._start_recorder(track, identity)
        finally:
            self._restarting.discard(track.id)

    def _close_watches(self) -> None:
        for _, watch in self.state.resize_watches.values():
            watch.close()
        self.state.resize_watches.clear()

    # Close requests

    def _request_close(self, error: Optional[str]) -> None:
        if self._closing:
            return
        self._closing = True
        self.tracker.stop()
        self._spawn(self._notify_parent_close(error))

    async def _notify_parent_close(self, error: Optional[str]) -> None:
        try:
            await self.host.parent_close(error)
        except BridgeError as e:
            self._logger.error(f"Could not request close from the host: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        detail = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        self._logger.error(f"\n\n{indent(detail)}\n")
        self._request_close(detail)
