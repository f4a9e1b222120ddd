"""
Session orchestrator.

Runs in the host process: starts the HTTP server, launches the sandboxed
session, serves its file writes and logs, and owns the shutdown sequence
that guarantees every recording is flushed before the process exits.
"""

import asyncio
import signal
import traceback
from typing import Awaitable, Callable, Optional, Set, Union

from .bridge import BridgeChannel
from .config import Config, StartupLine
from .errors import SandboxExitedError
from .logger import get_logger, indent
from .process import SandboxProcess
from .protocol import HostEndpoints, SessionProxy, register_host_endpoints
from .recording_store import RecordingStore
from .server import SessionServer, session_page_for


CLOSE_SIGNALS = (signal.SIGINT, signal.SIGUSR2, signal.SIGTERM)

CloseReason = Union[BaseException, str, None]


def format_error(error: CloseReason) -> str:
    if isinstance(error, BaseException):
        return ''.join(traceback.format_exception(type(error), error, error.__traceback__)).rstrip()
    return str(error)


class SessionOrchestrator(HostEndpoints):
    """
    Host side of one recording session.

    Example:
        ```python
        orchestrator = SessionOrchestrator(config)
        exit_code = await orchestrator.run(StartupLine(8080, token, "standup"))
        ```
    """

    def __init__(
        self,
        config: Config,
        store: Optional[RecordingStore] = None,
        sandbox: Optional[SandboxProcess] = None,
        server: Optional[SessionServer] = None
    ):
        """
        Args:
            config: Application configuration.
            store: Recording store; defaults to one below recording.base_dir.
            sandbox: Sandbox process launcher.
            server: Session page server.
        """
        self.config = config
        self.store = store or RecordingStore(config.recording.base_dir)
        self.sandbox = sandbox or SandboxProcess(
            max_message_bytes=config.bridge.max_message_bytes,
            log_level=config.logging.level,
        )
        self.server = server or SessionServer(session_page_for(config))

        self.channel: Optional[BridgeChannel] = None
        self.session: Optional[SessionProxy] = None
        self.room_sid: Optional[str] = None
        self.local_participant_sid: Optional[str] = None
        self.exit_code: Optional[int] = None

        self._should_close = False
        self._closing = False
        self._closed = asyncio.Event()
        self._startup_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._logger = get_logger('orchestrator')
        self._sandbox_logger = get_logger('sandbox')

    @property
    def is_closing(self) -> bool:
        return self._closing

    async def run(self, startup: StartupLine) -> int:
        """Start the session, wait until it is closed and return the exit code."""
        loop = asyncio.get_running_loop()
        for sig in CLOSE_SIGNALS:
            loop.add_signal_handler(sig, self._on_signal, sig)
        try:
            self._startup_task = asyncio.create_task(self.start(startup))
            return await self.wait_closed()
        finally:
            for sig in CLOSE_SIGNALS:
                loop.remove_signal_handler(sig)

    async def start(self, startup: StartupLine) -> None:
        """
        Bring the session up stage by stage.

        After each stage a close requested meanwhile takes over; any failure
        closes the session with that error.
        """
        try:
            await self._start(startup)
        except asyncio.CancelledError:
            if not self._closing:
                raise
        except Exception as e:
            self._should_close = True
            await self.close(e)

    async def _start(self, startup: StartupLine) -> None:
        await self.server.start(startup.port)
        self._logger.info(f"Started HTTP server. Listening on {startup.port}.")
        if self._should_close:
            await self.close()
            return

        channel = await self.sandbox.launch()
        self._logger.info('Launched sandbox.')
        if self._should_close:
            await self.close()
            return

        self._logger.debug('Registering callback(s)...')
        register_host_endpoints(channel, self)
        channel.on_close(self._on_channel_closed)
        self.channel = channel
        self.session = SessionProxy(channel)
        channel.start()
        self._logger.info('Registered callback(s).')
        if self._should_close:
            await self.close()
            return

        self._logger.debug(f"Navigating to {self.server.url}...")
        await self.session.navigate(self.server.url)
        self._logger.info(f"Navigated to {self.server.url}.")
        if self._should_close:
            await self.close()
            return

        self._logger.debug(f"Joining Room {startup.room}...")
        result = await self.session.run(startup.token, startup.room)
        self.room_sid = result.room_sid
        self.local_participant_sid = result.local_participant_sid
        self._logger.info(
            f"Joined Room {result.room_sid} as LocalParticipant {result.local_participant_sid}."
        )
        if self._should_close:
            await self.close()
            return

    async def close(self, error: CloseReason = None) -> None:
        """
        Shut everything down in order. Only the first call does anything.

        1. drain the session (every recorder flushed, room left)
        2. wait the grace period for trailing writes
        3. stop accepting HTTP connections
        4. close the session and the bridge
        5. terminate the sandbox process
        """
        if self._closing:
            return
        self._closing = True
        self._should_close = True

        if error is not None:
            self._logger.error(f"\n\n{indent(format_error(error))}\n")

        await self._cancel_startup()

        if self._session_alive:
            result = await self._stage(
                'Shutting down any remaining recorders and disconnecting room...',
                'All recorders shut down and room disconnected.',
                self.session.shutdown,
            )
            if result is not None:
                self._logger.debug(
                    f"Stopped {result.recorders_stopped} recorder(s), "
                    f"room disconnected: {result.room_disconnected}"
                )

        grace = self.config.shutdown.grace_period
        self._logger.info(f"Waiting {grace:g} seconds for everything to finish before exiting...")
        await asyncio.sleep(grace)

        await self._stage('Closing HTTP server...', 'Closed HTTP server.', self.server.stop_accepting)

        if self._session_alive:
            await self._stage('Closing page...', 'Closed page.', self.session.close)
        if self.channel is not None:
            await self._stage('Closing bridge...', 'Closed bridge.', self.channel.close)

        if self.sandbox.process is not None:
            await self._stage(
                'Closing sandbox...',
                'Closed sandbox.',
                lambda: self.sandbox.terminate(self.config.shutdown.process_timeout),
            )

        await self._stage('Flushing recordings...', 'Flushed recordings.', self.store.close)
        await self._stage('Releasing HTTP server...', 'Released HTTP server.', self.server.cleanup)

        self.exit_code = 1 if error is not None else 0
        self._closed.set()

    async def wait_closed(self) -> int:
        await self._closed.wait()
        return self.exit_code

    @property
    def _session_alive(self) -> bool:
        return self.session is not None and self.channel is not None and not self.channel.is_closed

    async def _stage(self, doing: str, done: str, action: Callable[[], Awaitable]):
        self._logger.debug(doing)
        try:
            result = await action()
        except Exception as e:
            self._logger.error(f"{doing} failed: {e}", exc_info=True)
            return None
        self._logger.info(done)
        return result

    async def _cancel_startup(self) -> None:
        task = self._startup_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _spawn_close(self, error: CloseReason = None) -> None:
        if self._closing:
            return
        task = asyncio.ensure_future(self.close(error))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_signal(self, sig: signal.Signals) -> None:
        self._logger.debug(f"Received {sig.name}.")
        self._should_close = True
        self._spawn_close()

    def _on_channel_closed(self, reason: Optional[BaseException]) -> None:
        if self._closing:
            return
        returncode = self.sandbox.process.returncode if self.sandbox.process else None
        detail = f"Sandbox exited unexpectedly (exit code {returncode})"
        if reason is not None:
            detail += f": {reason}"
        self._should_close = True
        self._spawn_close(SandboxExitedError(detail))

    # Host endpoints

    def log(self, level: str, message: str) -> None:
        if level == 'debug':
            self._sandbox_logger.debug(message)
        elif level == 'info':
            self._sandbox_logger.info(message)
        else:
            self._sandbox_logger.error(message)

    def parent_close(self, error: Optional[str] = None) -> None:
        self._logger.debug('Session requested close.')
        self._should_close = True
        self._spawn_close(error)

    async def create_recording(self, filepath, metapath, mime_type: str) -> None:
        await self.store.create_recording(filepath, metapath, mime_type)

    async def append_recording(self, filepath, chunk: str, start: float) -> int:
        return await self.store.append_recording(filepath, chunk, start)
