"""
Host-side storage of recording files.

Implements the createRecording and appendRecording endpoints. Writes to the
same file are serialized through one FIFO queue per file, so bytes land on
disk in the order the appends arrived.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Tuple

import aiofiles

from .codec import decode
from .errors import RecordingPathError
from .logger import get_logger, indent


Job = Tuple[Callable[[], Awaitable], asyncio.Future]


class RecordingStore:
    """
    Creates recordings and appends chunks to them below ``base_dir``.

    Example:
        ```python
        store = RecordingStore("/data")
        await store.create_recording(filepath, metapath, "audio/webm;codecs=opus")
        written = await store.append_recording(filepath, chunk, start)
        ```
    """

    def __init__(self, base_dir: str = "."):
        self.base_dir = Path(base_dir).resolve()
        self._queues: Dict[Path, asyncio.Queue] = {}
        self._workers: Dict[Path, asyncio.Task] = {}
        self._logger = get_logger('recordings')

    def resolve(self, segments: List[str]) -> Path:
        """
        Turn path segments into a path below ``base_dir``.

        Raises:
            RecordingPathError: If the segments are malformed or escape ``base_dir``.
        """
        if not isinstance(segments, list) or not segments:
            raise RecordingPathError(f"Invalid recording path: {segments!r}")
        for segment in segments:
            if not isinstance(segment, str) or segment in ('', '.', '..'):
                raise RecordingPathError(f"Invalid path segment {segment!r} in {segments!r}")
            if '/' in segment or '\\' in segment or '\x00' in segment:
                raise RecordingPathError(f"Invalid path segment {segment!r} in {segments!r}")

        path = self.base_dir.joinpath(*segments)
        if self.base_dir not in path.resolve().parents:
            raise RecordingPathError(f"Recording path escapes {self.base_dir}: {segments!r}")
        return path

    async def create_recording(self, filepath: List[str], metapath: List[str], mime_type: str) -> None:
        """Create the recording's directory and write its metadata file."""
        path = self.resolve(filepath)
        meta = self.resolve(metapath)
        metadata = {'createTime': int(time.time() * 1000), 'contentType': mime_type}
        await self._enqueue(path, lambda: self._create(path, meta, metadata))

    async def append_recording(self, filepath: List[str], chunk: str, start: float) -> int:
        """
        Decode a chunk and append it to the recording.

        Returns:
            Number of bytes written, 0 when the write failed.
        """
        path = self.resolve(filepath)
        try:
            data = decode(chunk)
        except (TypeError, ValueError):
            self._logger.error(f"Dropping undecodable chunk for {self._name(path)}", exc_info=True)
            return 0
        return await self._enqueue(path, lambda: self._append(path, data, start))

    async def close(self) -> None:
        """Wait until every queued write has landed."""
        for queue in list(self._queues.values()):
            await queue.join()
        await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    def _enqueue(self, path: Path, job: Callable[[], Awaitable]) -> asyncio.Future:
        queue = self._queues.get(path)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[path] = queue
            self._workers[path] = asyncio.create_task(self._worker(path, queue))
        future = asyncio.get_running_loop().create_future()
        queue.put_nowait((job, future))
        return future

    async def _worker(self, path: Path, queue: asyncio.Queue) -> None:
        while not queue.empty():
            job, future = queue.get_nowait()
            try:
                result = await job()
                if not future.done():
                    future.set_result(result)
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            finally:
                queue.task_done()

        # Idle: the next write to this file starts a new worker.
        del self._queues[path]
        del self._workers[path]

    async def _create(self, path: Path, meta: Path, metadata: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        meta.parent.mkdir(parents=True, exist_ok=True)
        meta_string = json.dumps(metadata)
        try:
            await self._write(meta, meta_string.encode('utf-8'), 'wb')
        except OSError as e:
            self._logger.error(f"\nError writing metadata\n{indent(repr(e))}\n")
            return
        self._logger.info(f"Created {self._name(path)} and wrote metadata {meta_string}")

    async def _append(self, path: Path, data: bytes, start: float) -> int:
        try:
            await self._write(path, data, 'ab')
        except OSError:
            self._logger.error(f"Failed to append {len(data)} bytes to {self._name(path)}", exc_info=True)
            return 0
        elapsed = time.time() * 1000 - start
        self._logger.debug(f"Wrote {len(data)} bytes to {self._name(path)} in {elapsed:.0f}ms")
        return len(data)

    async def _write(self, path: Path, data: bytes, mode: str) -> None:
        async with aiofiles.open(path, mode) as f:
            await f.write(data)

    def _name(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.base_dir))
        except ValueError:
            return str(path)
