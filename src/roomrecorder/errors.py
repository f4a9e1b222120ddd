"""
Exception hierarchy for Room Recorder.
"""

from typing import Optional


class RoomRecorderError(Exception):
    """Base exception for all Room Recorder errors."""
    pass


class ConfigError(RoomRecorderError):
    """Raised when the configuration file or the startup line is invalid."""
    pass


class BridgeError(RoomRecorderError):
    """Raised for bridge protocol failures (framing, size limits, unknown methods)."""
    pass


class BridgeClosedError(BridgeError):
    """Raised when a call is made on, or pending across, a closed bridge."""
    pass


class RemoteCallError(BridgeError):
    """Raised on the caller side when the remote handler raised."""

    def __init__(self, method: str, error_type: str, message: str, remote_traceback: Optional[str] = None):
        super().__init__(f"{method} failed remotely: {error_type}: {message}")
        self.method = method
        self.error_type = error_type
        self.remote_message = message
        self.remote_traceback = remote_traceback


class RecorderError(RoomRecorderError):
    """Raised when a recorder is driven through an invalid transition."""
    pass


class RecordingPathError(RoomRecorderError):
    """Raised when recording path segments are unsafe or escape the base directory."""
    pass


class SandboxExitedError(RoomRecorderError):
    """Raised when the sandboxed session process goes away while the host still needs it."""
    pass
