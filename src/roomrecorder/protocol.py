"""
Typed contract of the bridge between the host and the sandboxed session.

Method names and parameter names on the wire are fixed here; both sides talk
to each other only through the proxies and registration helpers below.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .bridge import BridgeChannel


# Host endpoints, called by the sandboxed session.
HOST_DEBUG = "debug"
HOST_INFO = "info"
HOST_ERROR = "error"
HOST_PARENT_CLOSE = "parentClose"
HOST_CREATE_RECORDING = "createRecording"
HOST_APPEND_RECORDING = "appendRecording"

# Session endpoints, called by the host.
SESSION_NAVIGATE = "navigate"
SESSION_RUN = "run"
SESSION_SHUTDOWN = "shutdown"
SESSION_CLOSE = "close"


@dataclass
class RunResult:
    """Identity of the joined room, returned by the session's run()."""
    room_sid: str
    local_participant_sid: str

    def to_wire(self) -> Dict[str, str]:
        return {'roomSid': self.room_sid, 'localParticipantSid': self.local_participant_sid}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> 'RunResult':
        return cls(
            room_sid=str(data.get('roomSid', '')),
            local_participant_sid=str(data.get('localParticipantSid', '')),
        )


@dataclass
class ShutdownResult:
    """Acknowledgment that the session drained every recorder."""
    recorders_stopped: int
    room_disconnected: bool

    def to_wire(self) -> Dict[str, Any]:
        return {'recordersStopped': self.recorders_stopped, 'roomDisconnected': self.room_disconnected}

    @classmethod
    def from_wire(cls, data: Optional[Dict[str, Any]]) -> 'ShutdownResult':
        data = data or {}
        return cls(
            recorders_stopped=int(data.get('recordersStopped', 0)),
            room_disconnected=bool(data.get('roomDisconnected', False)),
        )


class HostEndpoints(ABC):
    """What the host implements for the sandboxed session."""

    @abstractmethod
    def log(self, level: str, message: str) -> None:
        """Write a sandbox log line at debug, info or error level."""

    @abstractmethod
    def parent_close(self, error: Optional[str] = None) -> None:
        """Start the host's shutdown sequence; an error means exit status 1."""

    @abstractmethod
    async def create_recording(self, filepath: List[str], metapath: List[str], mime_type: str) -> None:
        """Create the recording's directory and metadata file."""

    @abstractmethod
    async def append_recording(self, filepath: List[str], chunk: str, start: float) -> int:
        """Append an encoded chunk. Returns the bytes written, 0 when dropped."""


class SessionEndpoints(ABC):
    """What the sandboxed session implements for the host."""

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Load the session page."""

    @abstractmethod
    async def run(self, token: str, room_name: str) -> RunResult:
        """Join the room and start recording."""

    @abstractmethod
    async def shutdown(self) -> ShutdownResult:
        """Drain every recorder and leave the room."""

    @abstractmethod
    async def close(self) -> None:
        """Final teardown."""


def register_host_endpoints(channel: BridgeChannel, host: HostEndpoints) -> None:
    """Expose the host endpoints on the host side of the channel."""
    channel.expose(HOST_DEBUG, lambda message: host.log('debug', message))
    channel.expose(HOST_INFO, lambda message: host.log('info', message))
    channel.expose(HOST_ERROR, lambda message: host.log('error', message))
    channel.expose(HOST_PARENT_CLOSE, lambda error=None: host.parent_close(error))
    channel.expose(
        HOST_CREATE_RECORDING,
        lambda filepath, metapath, mimeType: host.create_recording(filepath, metapath, mimeType)
    )
    channel.expose(
        HOST_APPEND_RECORDING,
        lambda filepath, chunk, start: host.append_recording(filepath, chunk, start)
    )


def register_session_endpoints(channel: BridgeChannel, session: SessionEndpoints) -> None:
    """Expose the session endpoints on the sandbox side of the channel."""

    async def run(token: str, roomName: str) -> Dict[str, str]:
        result = await session.run(token, roomName)
        return result.to_wire()

    async def shutdown() -> Dict[str, Any]:
        result = await session.shutdown()
        return result.to_wire()

    channel.expose(SESSION_NAVIGATE, lambda url: session.navigate(url))
    channel.expose(SESSION_RUN, run)
    channel.expose(SESSION_SHUTDOWN, shutdown)
    channel.expose(SESSION_CLOSE, lambda: session.close())


class HostProxy:
    """Sandbox-side view of the host endpoints."""

    def __init__(self, channel: BridgeChannel):
        self.channel = channel

    def log(self, level: str, message: str) -> None:
        method = {'debug': HOST_DEBUG, 'info': HOST_INFO}.get(level, HOST_ERROR)
        self.channel.post(method, message=message)

    async def parent_close(self, error: Optional[str] = None) -> None:
        if error is None:
            await self.channel.notify(HOST_PARENT_CLOSE)
        else:
            await self.channel.notify(HOST_PARENT_CLOSE, error=error)

    async def create_recording(self, filepath: List[str], metapath: List[str], mime_type: str) -> None:
        await self.channel.call(HOST_CREATE_RECORDING, filepath=filepath, metapath=metapath, mimeType=mime_type)

    async def append_recording(self, filepath: List[str], chunk: str, start: float) -> int:
        written = await self.channel.call(HOST_APPEND_RECORDING, filepath=filepath, chunk=chunk, start=start)
        return int(written or 0)


class SessionProxy:
    """Host-side view of the sandboxed session endpoints."""

    def __init__(self, channel: BridgeChannel):
        self.channel = channel

    async def navigate(self, url: str) -> None:
        await self.channel.call(SESSION_NAVIGATE, url=url)

    async def run(self, token: str, room_name: str) -> RunResult:
        return RunResult.from_wire(await self.channel.call(SESSION_RUN, token=token, roomName=room_name))

    async def shutdown(self) -> ShutdownResult:
        return ShutdownResult.from_wire(await self.channel.call(SESSION_SHUTDOWN))

    async def close(self) -> None:
        await self.channel.call(SESSION_CLOSE)
