"""
Bridge channel between the host and the sandboxed session.

A bidirectional JSON-lines RPC over a pair of asyncio streams. Each side can
expose named handlers and call the other side's handlers. Only JSON values
travel over the bridge; binary payloads must be encoded first (see codec).

Wire format, one object per line:

    {"kind": "request", "id": 1, "method": "appendRecording", "params": {...}}
    {"kind": "response", "id": 1, "result": 4096}
    {"kind": "response", "id": 1, "error": {"type": "OSError", "message": "..."}}
    {"kind": "notify", "method": "info", "params": {"message": "..."}}
"""

import asyncio
import inspect
import itertools
import json
import sys
import traceback
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .errors import BridgeClosedError, BridgeError, RemoteCallError
from .logger import get_logger


DEFAULT_MAX_MESSAGE_BYTES = 64 * 1024 * 1024

Handler = Callable[..., Any]


class BridgeChannel:
    """
    One endpoint of the bridge.

    Inbound requests and notifications are dispatched in arrival order, each
    in its own task, so a slow handler never blocks the read loop. Handlers
    that must preserve arrival order (such as file appends) must enqueue their
    work before their first suspension point.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        name: str = "bridge",
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES
    ):
        self.name = name
        self.max_message_bytes = max_message_bytes

        self._reader = reader
        self._writer = writer
        self._logger = get_logger(f'bridge.{name}')

        self._handlers: Dict[str, Handler] = {}
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()
        self._close_callbacks: List[Callable[[Optional[BaseException]], None]] = []
        self._drain_lock = asyncio.Lock()
        self._read_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._close_reason: Optional[BaseException] = None

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def expose(self, method: str, handler: Handler) -> None:
        """Register a handler for an inbound method (sync or async)."""
        if method in self._handlers:
            raise BridgeError(f"Method already exposed: {method}")
        self._handlers[method] = handler

    def on_close(self, callback: Callable[[Optional[BaseException]], None]) -> None:
        """Register a callback invoked once when the channel closes."""
        self._close_callbacks.append(callback)

    def start(self) -> None:
        """Start reading inbound messages."""
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop())

    async def call(self, method: str, **params: Any) -> Any:
        """
        Invoke a remote method and wait for its result.

        Raises:
            RemoteCallError: If the remote handler raised.
            BridgeClosedError: If the channel closed before the response arrived.
            BridgeError: If the request exceeds the message size limit.
        """
        if self.is_closed:
            raise BridgeClosedError(f"{self.name}: channel is closed")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            self._write({'kind': 'request', 'id': request_id, 'method': method, 'params': params})
            await self._drain()
            return await future
        finally:
            self._pending.pop(request_id, None)

    def post(self, method: str, **params: Any) -> None:
        """Send a notification without waiting for the transport to drain."""
        if self.is_closed:
            raise BridgeClosedError(f"{self.name}: channel is closed")
        self._write({'kind': 'notify', 'method': method, 'params': params})

    async def notify(self, method: str, **params: Any) -> None:
        """Send a fire-and-forget notification."""
        self.post(method, **params)
        await self._drain()

    async def close(self) -> None:
        """Close the channel; pending calls fail with BridgeClosedError."""
        if self.is_closed:
            return
        self._finish(None)
        try:
            self._writer.close()
        except (ConnectionError, BrokenPipeError) as e:
            self._logger.debug(f"Writer already gone on close: {e}")
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass

    async def wait_closed(self) -> Optional[BaseException]:
        """Wait until the channel closes and return the reason (None for a clean close)."""
        await self._closed.wait()
        return self._close_reason

    def _write(self, message: dict) -> None:
        line = json.dumps(message, separators=(',', ':')).encode('utf-8') + b'\n'
        if len(line) > self.max_message_bytes:
            raise BridgeError(
                f"{self.name}: message for {message.get('method', 'response')} is "
                f"{len(line)} bytes, limit is {self.max_message_bytes}"
            )
        self._writer.write(line)

    async def _drain(self) -> None:
        async with self._drain_lock:
            try:
                await self._writer.drain()
            except (ConnectionError, BrokenPipeError) as e:
                raise BridgeClosedError(f"{self.name}: peer went away: {e}") from e

    async def _read_loop(self) -> None:
        reason: Optional[BaseException] = None
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except ValueError as e:
                    reason = BridgeError(f"{self.name}: inbound message exceeds limit: {e}")
                    self._logger.error(str(reason))
                    break
                except ConnectionError as e:
                    reason = BridgeClosedError(f"{self.name}: connection lost: {e}")
                    break
                if not line:
                    reason = BridgeClosedError(f"{self.name}: peer closed the channel")
                    break
                if not line.strip():
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError as e:
                    self._logger.error(f"Dropping malformed message: {e}")
                    continue
                self._dispatch(message)
        finally:
            self._finish(reason)

    def _dispatch(self, message: dict) -> None:
        kind = message.get('kind')
        if kind == 'response':
            future = self._pending.get(message.get('id'))
            if future is None or future.done():
                self._logger.warning(f"Response for unknown request {message.get('id')}")
                return
            if 'error' in message:
                error = message['error'] or {}
                future.set_exception(RemoteCallError(
                    method=error.get('method', '?'),
                    error_type=error.get('type', 'Error'),
                    message=error.get('message', ''),
                    remote_traceback=error.get('traceback'),
                ))
            else:
                future.set_result(message.get('result'))
        elif kind == 'request':
            self._spawn(self._handle_request(message))
        elif kind == 'notify':
            self._spawn(self._handle_notify(message))
        else:
            self._logger.error(f"Dropping message of unknown kind {kind!r}")

    def _spawn(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _invoke(self, method: str, params: Any) -> Any:
        handler = self._handlers.get(method)
        if handler is None:
            raise BridgeError(f"Unknown method: {method}")
        if not isinstance(params, dict):
            raise BridgeError(f"Parameters for {method} must be an object")
        result = handler(**params)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _handle_request(self, message: dict) -> None:
        request_id = message.get('id')
        method = message.get('method', '')
        try:
            result = await self._invoke(method, message.get('params', {}))
            response = {'kind': 'response', 'id': request_id, 'result': result}
        except Exception as e:
            response = {
                'kind': 'response',
                'id': request_id,
                'error': {
                    'method': method,
                    'type': type(e).__name__,
                    'message': str(e),
                    'traceback': traceback.format_exc(),
                },
            }
        if self.is_closed:
            self._logger.debug(f"Channel closed before {method} could respond")
            return
        try:
            self._write(response)
            await self._drain()
        except BridgeError as e:
            self._logger.error(f"Could not respond to {method}: {e}")

    async def _handle_notify(self, message: dict) -> None:
        method = message.get('method', '')
        try:
            await self._invoke(method, message.get('params', {}))
        except Exception:
            self._logger.exception(f"Notification handler {method} failed")

    def _finish(self, reason: Optional[BaseException]) -> None:
        if self.is_closed:
            return
        self._close_reason = reason
        self._closed.set()

        for future in self._pending.values():
            if not future.done():
                future.set_exception(reason or BridgeClosedError(f"{self.name}: channel is closed"))
        self._pending.clear()

        for callback in self._close_callbacks:
            try:
                callback(reason)
            except Exception:
                self._logger.exception("Close callback failed")


async def open_stdio_channel(
    name: str = "sandbox",
    max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES
) -> BridgeChannel:
    """Open a bridge channel on this process's stdin/stdout."""
    loop = asyncio.get_running_loop()

    reader = asyncio.StreamReader(limit=max_message_bytes)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)

    return BridgeChannel(reader, writer, name=name, max_message_bytes=max_message_bytes)
