"""
PyAV capture backend.

Encodes LiveKit tracks into a live WebM stream held in memory and hands the
produced bytes to the recorder every timeslice, the way a MediaRecorder fires
dataavailable events.
"""

import asyncio
import time
from fractions import Fraction
from typing import Any, List, Optional

import av
import numpy as np
from livekit import rtc

from .logger import get_logger
from .media import CaptureState, MediaBackend, MediaCapture, ResizeWatch, Track


SAMPLE_RATE = 48000
AUDIO_FRAME_SAMPLES = 960  # 20 ms at 48 kHz, the Opus frame size
VIDEO_FRAME_RATE = 30

# Codecs the WebM muxer accepts, mapped to their FFmpeg encoders.
WEBM_ENCODERS = {
    'vp8': 'libvpx',
    'vp9': 'libvpx-vp9',
    'av1': 'libaom-av1',
    'opus': 'libopus',
    'vorbis': 'libvorbis',
}

logger = get_logger('avcapture')


def parse_mime_type(mime_type: str):
    """Split ``video/webm;codecs=vp8`` into ('video', 'webm', 'vp8')."""
    media, _, params = mime_type.partition(';')
    kind, _, container = media.strip().partition('/')
    codec = None
    for param in params.split(';'):
        key, _, value = param.strip().partition('=')
        if key == 'codecs' and value:
            codec = value.strip('"').split(',')[0].strip().lower()
    return kind, container, codec


class SilentAudioSource:
    """Marker for a generated silent audio track."""

    def __repr__(self) -> str:
        return 'SilentAudioSource()'


class CaptureStream:
    """The set of sources one capture encodes."""

    def __init__(self, sources: List[Any]):
        self.sources = [s for s in sources if s is not None]

    @property
    def video_source(self):
        for source in self.sources:
            if getattr(source, 'kind', None) == rtc.TrackKind.KIND_VIDEO:
                return source
        return None

    @property
    def audio_source(self):
        for source in self.sources:
            if isinstance(source, SilentAudioSource):
                return source
            if getattr(source, 'kind', None) == rtc.TrackKind.KIND_AUDIO:
                return source
        return None


class ChunkSink:
    """Write-only, non-seekable file object collecting muxer output."""

    def __init__(self):
        self._buffer = bytearray()

    def write(self, data) -> int:
        self._buffer.extend(data)
        return len(data)

    def take(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


class AvMediaCapture(MediaCapture):
    """
    MediaRecorder-like capture encoding one CaptureStream to WebM.

    Every acknowledgment is scheduled with ``call_soon``, so callbacks run in
    the order the calls that caused them were made.

    With a video source the container is opened on the first video frame,
    which fixes the frame size; audio before that frame is dropped and the
    audio timeline starts where the video does.
    """

    def __init__(self, stream: CaptureStream, mime_type: str, bits_per_second: int):
        super().__init__()
        self.stream = stream
        self.mime_type = mime_type
        self.bits_per_second = bits_per_second

        _, _, codec = parse_mime_type(mime_type)
        self.codec = codec

        self._state = CaptureState.INACTIVE
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sink = ChunkSink()
        self._container = None
        self._video = None
        self._audio = None
        self._fifo: Optional[av.AudioFifo] = None
        self._has_audio = False
        self._tasks: List[asyncio.Task] = []
        self._started_at = 0.0
        self._last_video_pts = -1
        self._audio_samples = 0
        self._audio_encoded = False

    @property
    def state(self) -> CaptureState:
        return self._state

    def start(self, timeslice_ms: int) -> None:
        if self._state is not CaptureState.INACTIVE or self._loop is not None:
            raise RuntimeError(f"Capture cannot start in state {self._state.value}")

        self._loop = asyncio.get_running_loop()
        video_source = self.stream.video_source
        audio_source = self.stream.audio_source
        self._has_audio = audio_source is not None
        if video_source is None:
            self._open()

        self._state = CaptureState.RECORDING
        self._started_at = time.monotonic()

        if video_source is not None:
            self._spawn(self._pump_video(video_source))
        if isinstance(audio_source, SilentAudioSource):
            self._spawn(self._pump_silence())
        elif audio_source is not None:
            self._spawn(self._pump_audio(audio_source))
        self._spawn(self._flush_every(timeslice_ms / 1000))

        self._schedule(self.on_start)

    def pause(self) -> None:
        if self._state is not CaptureState.RECORDING:
            return
        self._state = CaptureState.PAUSED
        self._schedule(self.on_pause)

    def request_data(self) -> None:
        if self._state is CaptureState.INACTIVE:
            raise RuntimeError("Capture is inactive")
        self._schedule(self.on_data_available, self._sink.take())

    def stop(self) -> None:
        if self._state is CaptureState.INACTIVE:
            return
        self._state = CaptureState.INACTIVE
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

        if self._container is None:
            logger.debug(f"No video frame arrived for {self.mime_type}, nothing was recorded.")
        else:
            try:
                self._finish_container()
            except Exception as e:
                logger.error(f"Closing {self.mime_type} container failed: {e}")
                self._schedule(self.on_error, e)

        self._schedule(self.on_data_available, self._sink.take())
        self._schedule(self.on_stop)

    def _open(self, width: Optional[int] = None, height: Optional[int] = None) -> None:
        container = av.open(self._sink, mode='w', format='webm', options={'live': '1'})
        if width is not None:
            video = container.add_stream(WEBM_ENCODERS[self.codec], rate=VIDEO_FRAME_RATE)
            video.width = width
            video.height = height
            video.pix_fmt = 'yuv420p'
            video.bit_rate = self.bits_per_second
            video.time_base = Fraction(1, 1000)
            video.codec_context.time_base = Fraction(1, 1000)
            self._video = video
        if self._has_audio:
            audio_codec = 'opus' if width is not None else self.codec
            audio = container.add_stream(WEBM_ENCODERS[audio_codec], rate=SAMPLE_RATE)
            audio.codec_context.layout = 'mono'
            audio.time_base = Fraction(1, SAMPLE_RATE)
            self._audio = audio
            self._fifo = av.AudioFifo()
        self._container = container

    def _finish_container(self) -> None:
        if self._video is not None and self._last_video_pts >= 0:
            self._mux(self._video.encode(None))
        if self._audio is not None and self._audio_encoded:
            self._mux(self._audio.encode(None))
        self._container.close()

    def _schedule(self, callback, *args) -> None:
        if callback is not None:
            self._loop.call_soon(callback, *args)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(self._task_done)
        self._tasks.append(task)

    def _task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._fail(error)

    def _mux(self, packets) -> None:
        for packet in packets:
            self._container.mux(packet)

    def _fail(self, error: BaseException) -> None:
        logger.error(f"Capture of {self.mime_type} failed: {error}", exc_info=error)
        self._schedule(self.on_error, error)

    async def _flush_every(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._state is CaptureState.RECORDING:
                self._schedule(self.on_data_available, self._sink.take())

    async def _pump_video(self, track) -> None:
        video_stream = rtc.VideoStream(track)
        try:
            async for event in video_stream:
                if self._state is not CaptureState.RECORDING:
                    continue
                try:
                    self._encode_video(event.frame)
                except Exception as e:
                    self._fail(e)
        finally:
            await video_stream.aclose()

    def _encode_video(self, frame) -> None:
        rgba = frame.convert(rtc.VideoBufferType.RGBA)
        pixels = np.frombuffer(rgba.data, dtype=np.uint8).reshape(rgba.height, rgba.width, 4)

        pts = int((time.monotonic() - self._started_at) * 1000)
        if pts <= self._last_video_pts:
            pts = self._last_video_pts + 1

        if self._container is None:
            # Fixed for the whole file; a resize restarts the recorder.
            self._open(rgba.width, rgba.height)
            self._audio_samples = pts * SAMPLE_RATE // 1000
        self._last_video_pts = pts

        av_frame = av.VideoFrame.from_ndarray(pixels, format='rgba')
        av_frame = av_frame.reformat(width=self._video.width, height=self._video.height, format='yuv420p')
        av_frame.pts = pts
        av_frame.time_base = Fraction(1, 1000)
        self._mux(self._video.encode(av_frame))

    async def _pump_audio(self, track) -> None:
        audio_stream = rtc.AudioStream(track, sample_rate=SAMPLE_RATE, num_channels=1)
        try:
            async for event in audio_stream:
                if self._state is not CaptureState.RECORDING:
                    continue
                try:
                    samples = np.frombuffer(event.frame.data, dtype=np.int16).reshape(1, -1)
                    self._encode_audio(samples)
                except Exception as e:
                    self._fail(e)
        finally:
            await audio_stream.aclose()

    async def _pump_silence(self) -> None:
        silence = np.zeros((1, AUDIO_FRAME_SAMPLES), dtype=np.int16)
        interval = AUDIO_FRAME_SAMPLES / SAMPLE_RATE
        deadline = time.monotonic()
        while True:
            deadline += interval
            await asyncio.sleep(max(0.0, deadline - time.monotonic()))
            if self._state is not CaptureState.RECORDING:
                continue
            try:
                self._encode_audio(silence)
            except Exception as e:
                self._fail(e)

    def _encode_audio(self, samples: np.ndarray) -> None:
        if self._audio is None:
            return
        frame = av.AudioFrame.from_ndarray(samples, format='s16', layout='mono')
        frame.sample_rate = SAMPLE_RATE
        frame.pts = None
        self._fifo.write(frame)

        while self._fifo.samples >= AUDIO_FRAME_SAMPLES:
            chunk = self._fifo.read(AUDIO_FRAME_SAMPLES)
            chunk.pts = self._audio_samples
            chunk.time_base = Fraction(1, SAMPLE_RATE)
            self._audio_samples += chunk.samples
            self._audio_encoded = True
            self._mux(self._audio.encode(chunk))


class AvResizeWatch(ResizeWatch):
    """Watches a video track's frame size on a dedicated VideoStream."""

    def __init__(self, track: Track, callback):
        self.track = track
        self.callback = callback
        self._size = None
        self._task = asyncio.ensure_future(self._watch())
        self._task.add_done_callback(self._watch_done)

    def close(self) -> None:
        self._task.cancel()

    def _watch_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Resize watch of track {self.track.id} failed", exc_info=task.exception())

    async def _watch(self) -> None:
        video_stream = rtc.VideoStream(self.track.source)
        try:
            async for event in video_stream:
                size = (event.frame.width, event.frame.height)
                if self._size is not None and size != self._size:
                    logger.debug(f"Track {self.track.id} resized from {self._size} to {size}")
                    self.callback()
                self._size = size
        finally:
            await video_stream.aclose()


class AvMediaBackend(MediaBackend):
    """Capture backend built on PyAV and the LiveKit media streams."""

    def is_type_supported(self, mime_type: str) -> bool:
        kind, container, codec = parse_mime_type(mime_type)
        if container != 'webm' or kind not in ('audio', 'video'):
            return False
        encoder = WEBM_ENCODERS.get(codec)
        return encoder is not None and encoder in av.codecs_available

    def create_stream(self, sources: List[Any]) -> CaptureStream:
        return CaptureStream(sources)

    def silent_audio_track(self) -> SilentAudioSource:
        return SilentAudioSource()

    def add_track(self, stream: CaptureStream, source: Any) -> None:
        stream.sources.append(source)

    def create_capture(self, stream: CaptureStream, mime_type: str, bits_per_second: int) -> AvMediaCapture:
        if not self.is_type_supported(mime_type):
            raise ValueError(f"Unsupported MIME type: {mime_type}")
        return AvMediaCapture(stream, mime_type, bits_per_second)

    def watch_resize(self, track: Track, callback) -> AvResizeWatch:
        return AvResizeWatch(track, callback)
