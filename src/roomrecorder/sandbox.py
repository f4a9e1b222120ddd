"""
Sandboxed session runtime.

Entry point of the child process launched by the host
(``python -m roomrecorder.sandbox``). Talks to the host only through the
bridge on stdin/stdout; every log record is forwarded to the host.
"""

import asyncio
import logging
import os
import sys
import traceback
from typing import Callable, Optional

import aiohttp

from .bridge import DEFAULT_MAX_MESSAGE_BYTES, open_stdio_channel
from .errors import BridgeError, RoomRecorderError
from .logger import get_logger
from .media import MediaBackend, RoomClient
from .protocol import HostProxy, RunResult, SessionEndpoints, ShutdownResult, register_session_endpoints
from .session import SessionController, SessionSettings


ENV_MAX_MESSAGE_BYTES = "ROOMRECORDER_MAX_MESSAGE_BYTES"
ENV_LOG_LEVEL = "ROOMRECORDER_LOG_LEVEL"


class BridgeLogHandler(logging.Handler):
    """Forwards log records to the host's debug/info/error endpoints."""

    def __init__(self, host: HostProxy):
        super().__init__()
        self.host = host

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            scope = getattr(record, 'scope', None)
            if scope:
                message = f"[{scope}] {message}"
            if record.exc_info:
                message += '\n' + ''.join(traceback.format_exception(*record.exc_info))

            if record.levelno < logging.INFO:
                level = 'debug'
            elif record.levelno < logging.WARNING:
                level = 'info'
            else:
                level = 'error'
            self.host.log(level, message)
        except BridgeError:
            self.handleError(record)


def default_room_factory(url: str) -> RoomClient:
    from .livekit_room import LiveKitRoomClient
    return LiveKitRoomClient(url)


def default_backend_factory() -> MediaBackend:
    from .avcapture import AvMediaBackend
    return AvMediaBackend()


class SandboxRuntime(SessionEndpoints):
    """
    The page of the sandboxed session.

    ``navigate`` loads the host's session page; ``run``, ``shutdown`` and
    ``close`` are delegated to the SessionController built from it.
    """

    def __init__(
        self,
        host: HostProxy,
        room_factory: Callable[[str], RoomClient] = default_room_factory,
        backend_factory: Callable[[], MediaBackend] = default_backend_factory
    ):
        self.host = host
        self.room_factory = room_factory
        self.backend_factory = backend_factory
        self.page: Optional[dict] = None
        self.controller: Optional[SessionController] = None
        self._logger = get_logger('sandbox')

    async def navigate(self, url: str) -> None:
        self._logger.debug(f"Loading session page {url}")
        async with aiohttp.ClientSession() as session:
            async with session.get(url) as response:
                response.raise_for_status()
                self.page = await response.json()

        livekit_url = self.page.get('livekit', {}).get('url')
        if not livekit_url:
            raise RoomRecorderError(f"Session page {url} does not name a LiveKit URL")

        self.controller = SessionController(
            self.room_factory(livekit_url),
            self.backend_factory(),
            self.host,
            SessionSettings.from_page(self.page),
        )
        self._logger.debug('Session page loaded.')

    async def run(self, token: str, room_name: str) -> RunResult:
        if self.controller is None:
            raise RoomRecorderError("run() called before navigate()")
        return await self.controller.run(token, room_name)

    async def shutdown(self) -> ShutdownResult:
        if self.controller is None:
            return ShutdownResult(recorders_stopped=0, room_disconnected=False)
        return await self.controller.shutdown()

    async def close(self) -> None:
        if self.controller is not None:
            await self.controller.close()

    def handle_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        """Event-loop exception handler: report the error and ask the host to close."""
        error = context.get('exception')
        if error is not None:
            detail = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            detail = context.get('message', 'Unhandled error')
        self._logger.error(f"Unhandled error in session: {detail}")
        if self.controller is not None and self.controller.is_closing:
            return
        asyncio.ensure_future(self._request_close(detail))

    async def _request_close(self, detail: str) -> None:
        try:
            await self.host.parent_close(detail)
        except BridgeError as e:
            self._logger.error(f"Could not request close from the host: {e}")


async def main() -> int:
    max_message_bytes = int(os.environ.get(ENV_MAX_MESSAGE_BYTES, DEFAULT_MAX_MESSAGE_BYTES))
    channel = await open_stdio_channel('sandbox', max_message_bytes)
    host = HostProxy(channel)

    logger = logging.getLogger('room_recorder')
    logger.setLevel(getattr(logging, os.environ.get(ENV_LOG_LEVEL, 'INFO').upper(), logging.INFO))
    logger.handlers.clear()
    logger.addHandler(BridgeLogHandler(host))
    logger.propagate = False

    runtime = SandboxRuntime(host)
    register_session_endpoints(channel, runtime)
    asyncio.get_running_loop().set_exception_handler(runtime.handle_exception)

    channel.start()
    reason = await channel.wait_closed()
    if runtime.controller is not None and not runtime.controller.is_closing:
        await runtime.close()
    if reason is not None:
        print(f"Sandbox bridge closed: {reason}", file=sys.stderr)
    return 0


if __name__ == '__main__':
    sys.exit(asyncio.run(main()))
