"""
Per-track recorder for Room Recorder.

One Recorder is bound to one subscribed audio or video track. It drives a
capture primitive through idle -> recording -> pausing -> stopped and forwards
every captured chunk, in capture order, to the host's appendRecording.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .codec import encode, iter_slices
from .errors import BridgeError, RecorderError
from .logger import get_scoped_logger
from .media import MediaBackend, MediaCapture, Track, TrackKind


RECORDING_EXTENSION = "webm"
METADATA_EXTENSION = "json"

_STOP = object()


class RecorderState(Enum):
    """Recorder lifecycle state."""
    IDLE = "idle"
    RECORDING = "recording"
    PAUSING = "pausing"
    STOPPED = "stopped"


@dataclass
class RecorderSettings:
    """Settings shared by every recorder of a session."""
    flush_interval: float = 10.0
    video_bits_per_second: int = 1500000
    preferred_video_codec: str = "h264"
    fallback_video_codec: str = "vp8"
    audio_codec: str = "opus"
    max_append_bytes: int = 4 * 1024 * 1024


class RecorderCounter:
    """
    Active Recorder Count.

    Incremented when a capture acknowledges its start, decremented once when
    that recorder reaches STOPPED.
    """

    def __init__(self):
        self._value = 0
        self._zero = asyncio.Event()
        self._zero.set()

    @property
    def value(self) -> int:
        return self._value

    def increment(self) -> int:
        self._value += 1
        self._update()
        return self._value

    def decrement(self) -> int:
        self._value -= 1
        self._update()
        return self._value

    def resync(self, value: int) -> None:
        self._value = value
        self._update()

    async def wait_zero(self) -> None:
        await self._zero.wait()

    def _update(self) -> None:
        if self._value <= 0:
            self._zero.set()
        else:
            self._zero.clear()


def safe_segment(value: str) -> str:
    """Make a participant identity or room name usable as one path segment."""
    cleaned = ''.join('_' if ch in '/\\\x00' else ch for ch in value).strip()
    if cleaned in ('', '.', '..'):
        cleaned = f"_{cleaned}"
    return cleaned


def recording_key(identity: str, kind: TrackKind) -> str:
    """Subscription key, also the directory name, for an (identity, kind) pair."""
    return f"{safe_segment(identity)}.{kind.value}"


def recording_paths(
    output_dir: str,
    room_name: str,
    identity: str,
    kind: TrackKind,
    subscription_index: int
) -> Tuple[List[str], List[str]]:
    """
    Path segments of a recording and of its metadata file.

    Returns:
        (filepath, metapath), e.g.
        ['recordings', 'room', 'alice.video', '2.webm'] and
        ['recordings', 'room', 'alice.video', '2.json'].
    """
    directory = [output_dir, safe_segment(room_name), recording_key(identity, kind)]
    filepath = directory + [f"{subscription_index}.{RECORDING_EXTENSION}"]
    metapath = directory + [f"{subscription_index}.{METADATA_EXTENSION}"]
    return filepath, metapath


def select_mime_type(kind: TrackKind, backend: MediaBackend, settings: RecorderSettings) -> str:
    """Preferred video codec when supported, universal fallback otherwise; Opus for audio."""
    if kind is TrackKind.VIDEO:
        preferred = f"video/webm;codecs={settings.preferred_video_codec}"
        if backend.is_type_supported(preferred):
            return preferred
        return f"video/webm;codecs={settings.fallback_video_codec}"
    return f"audio/webm;codecs={settings.audio_codec}"


class Recorder:
    """
    Records one track into one Recording File.

    Example:
        ```python
        recorder = Recorder(track, "alice", 1, filepath, metapath, mime, host, backend, counter)
        await recorder.start()
        ...
        count = await recorder.stop()
        ```

    ``stop()`` pauses the capture, asks it for the remaining buffered data,
    stops it, and returns only once every chunk produced before the stop has
    been acknowledged by the host. Chunks are sent one at a time by a single
    sender task, so the host sees them in capture order.
    """

    def __init__(
        self,
        track: Track,
        identity: str,
        subscription_index: int,
        filepath: List[str],
        metapath: List[str],
        mime_type: str,
        host,
        backend: MediaBackend,
        counter: RecorderCounter,
        settings: Optional[RecorderSettings] = None
    ):
        """
        Args:
            track: Subscribed audio or video track.
            identity: Identity of the participant publishing the track.
            subscription_index: Index of this recording for (identity, kind).
            filepath: Path segments of the recording.
            metapath: Path segments of the metadata file.
            mime_type: MIME type handed to the capture primitive.
            host: Host endpoints (create_recording, append_recording).
            backend: Capture backend.
            counter: Session-wide Active Recorder Count.
            settings: Flush interval, bitrate and append sizing.
        """
        if track.is_data:
            raise RecorderError(f"Data track {track.id} cannot be recorded")

        self.track = track
        self.identity = identity
        self.subscription_index = subscription_index
        self.filepath = list(filepath)
        self.metapath = list(metapath)
        self.mime_type = mime_type
        self.settings = settings or RecorderSettings()

        self.state = RecorderState.IDLE
        self.counted = False
        self.bytes_written = 0
        self.append_count = 0

        self._host = host
        self._backend = backend
        self._counter = counter
        self._capture: Optional[MediaCapture] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._sender: Optional[asyncio.Task] = None
        self._start_called = False
        self._started = asyncio.Event()
        self._stopped = asyncio.Event()
        self._logger = get_scoped_logger(self.filename, 'recorder')

    @property
    def filename(self) -> str:
        return '/'.join(self.filepath)

    @property
    def is_stopped(self) -> bool:
        return self.state is RecorderState.STOPPED

    async def start(self) -> None:
        """
        Create the recording and start capturing.

        Returns once the capture acknowledged its start.

        Raises:
            RecorderError: If the recorder was already started or the capture
                stopped before acknowledging its start.
        """
        if self._start_called:
            raise RecorderError(f"Recorder for {self.filename} was already started")
        self._start_called = True

        try:
            self._logger.info(f"Begin recording {self.filename} as {self.mime_type}.")
            await self._host.create_recording(self.filepath, self.metapath, self.mime_type)

            stream = self._backend.create_stream([self.track.source])
            if self.track.kind is TrackKind.VIDEO:
                # The capture primitive refuses video-only streams.
                self._backend.add_track(stream, self._backend.silent_audio_track())
            capture = self._backend.create_capture(
                stream, self.mime_type, self.settings.video_bits_per_second
            )
        except BaseException:
            self._finalize()
            raise

        capture.on_start = self._on_start
        capture.on_data_available = self._on_data_available
        capture.on_pause = self._on_pause
        capture.on_stop = self._on_stop
        capture.on_error = self._on_error
        self._capture = capture
        self._sender = asyncio.create_task(self._send_loop())

        self._logger.info(f"Starting recorder for {self.filename}.")
        try:
            capture.start(int(self.settings.flush_interval * 1000))
        except Exception:
            self._queue.put_nowait(_STOP)
            await self._stopped.wait()
            raise

        await self._started.wait()
        if self.state is RecorderState.STOPPED:
            raise RecorderError(f"Capture for {self.filename} stopped before it started")

    async def stop(self, on_stopped: Optional[Callable[[int], None]] = None) -> int:
        """
        Drain and stop the recorder. Safe to call several times.

        Args:
            on_stopped: Continuation invoked with the Active Recorder Count
                once this recorder is stopped.

        Returns:
            The Active Recorder Count after this recorder stopped.
        """
        if not self._start_called:
            self._start_called = True
            self._finalize()
        elif self.state is RecorderState.IDLE:
            await self._started.wait()

        if self.state is RecorderState.RECORDING:
            self.state = RecorderState.PAUSING
            self._logger.info(f"Pausing {self.filename} before stopping it.")
            try:
                self._capture.pause()
            except Exception as e:
                self._logger.error(f"Pause of {self.filename} failed ({e}), stopping directly.")
                self._force_stop()

        await self._stopped.wait()

        count = self._counter.value
        if on_stopped is not None:
            on_stopped(count)
        return count

    def _force_stop(self) -> None:
        try:
            self._capture.stop()
        except Exception as e:
            self._logger.error(f"Stop of {self.filename} failed: {e}")
            self._queue.put_nowait(_STOP)

    def _on_start(self) -> None:
        if self.state is not RecorderState.IDLE:
            return
        self.state = RecorderState.RECORDING
        self.counted = True
        count = self._counter.increment()
        self._logger.info(f"Recorder {self.filename} started. Active recorder count is now {count}.")
        self._started.set()

    def _on_data_available(self, data: bytes) -> None:
        if not data:
            if self.state is RecorderState.PAUSING:
                self._logger.debug(f"Final drain of {self.filename} delivered no data.")
            else:
                self._logger.warning('Received a data available event of size 0! Doing nothing!')
            return
        self._queue.put_nowait(bytes(data))

    def _on_pause(self) -> None:
        self._logger.info(f"Paused {self.filename}, requesting final data.")
        self._capture.request_data()
        self._logger.info(f"Stopping {self.filename} completely.")
        self._force_stop()

    def _on_stop(self) -> None:
        self._queue.put_nowait(_STOP)

    def _on_error(self, error: BaseException) -> None:
        self._logger.error(f"Recorder error {type(error).__name__}: {error}")

    async def _send_loop(self) -> None:
        try:
            while True:
                item = await self._queue.get()
                if item is _STOP:
                    break
                await self._append(item)
        finally:
            self._finalize()

    async def _append(self, data: bytes) -> None:
        for piece in iter_slices(data, self.settings.max_append_bytes):
            start = time.time() * 1000
            self._logger.info(f"Writing {len(piece)} bytes to {self.filename}")
            try:
                written = await self._host.append_recording(self.filepath, encode(piece), start)
            except BridgeError as e:
                self._logger.error(f"Dropped {len(piece)} bytes for {self.filename}: {e}")
                continue
            self.bytes_written += written
            self.append_count += 1

    def _finalize(self) -> None:
        if self.state is RecorderState.STOPPED:
            return
        was_counted = self.counted
        self.state = RecorderState.STOPPED
        self.counted = False
        if was_counted:
            count = self._counter.decrement()
            self._logger.info(f"Stopped {self.filename}. Active recorder count is now {count}.")
        else:
            self._logger.info(f"Stopped {self.filename} before it started recording.")
        self._started.set()
        self._stopped.set()
