"""
Configuration module for Room Recorder.
Loads settings from YAML file and provides typed configuration.

Credentials (token, room) are never part of the configuration: they are read
from standard input at startup.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigError


DEFAULT_CONFIG_PATH = "config.yaml"


@dataclass
class LiveKitConfig:
    """Conferencing server settings."""
    url: str = "ws://localhost:7880"


@dataclass
class RecordingConfig:
    """Recording settings."""
    base_dir: str = "."               # recordings/<room>/... is created below this
    output_dir: str = "recordings"    # first path segment of every recording
    flush_interval: float = 10.0      # seconds between data-available flushes
    video_bits_per_second: int = 1500000
    preferred_video_codec: str = "h264"
    fallback_video_codec: str = "vp8"
    audio_codec: str = "opus"
    max_append_bytes: int = 4 * 1024 * 1024  # raw bytes per appendRecording call


@dataclass
class RoomConfig:
    """Room occupancy settings."""
    starting_timeout: float = 600.0   # room that has been empty since we joined
    ending_timeout: float = 60.0      # room that became empty after the last participant left


@dataclass
class ShutdownConfig:
    """Shutdown sequence settings."""
    grace_period: float = 10.0        # wait for trailing writes after the session drained
    process_timeout: float = 10.0     # wait for the sandbox process to exit before terminating it


@dataclass
class BridgeConfig:
    """Bridge channel settings."""
    max_message_bytes: int = 64 * 1024 * 1024


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: Optional[str] = None
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class Config:
    """Main configuration container."""
    livekit: LiveKitConfig = field(default_factory=LiveKitConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    room: RoomConfig = field(default_factory=RoomConfig)
    shutdown: ShutdownConfig = field(default_factory=ShutdownConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass
class StartupLine:
    """The single line read from standard input at startup."""
    port: int
    token: str
    room: str

    def __repr__(self) -> str:
        return f"StartupLine(port={self.port}, token=<redacted>, room={self.room!r})"


def parse_startup_line(line: str) -> StartupLine:
    """
    Parse the ``port token roomIdentifier`` line received on stdin.

    Raises:
        ConfigError: If the line does not hold exactly three fields or the port is invalid.
    """
    parts = line.strip().split(' ')
    if len(parts) != 3 or not all(parts):
        raise ConfigError("Expected 'port token roomIdentifier' on standard input")

    port_text, token, room = parts
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigError(f"Invalid port: {port_text!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"Port out of range: {port}")

    return StartupLine(port=port, token=token, room=room)


def _as_float(data: dict, key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}") from None


def _as_int(data: dict, key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}") from None


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return section


def build_config(data: Any) -> Config:
    """Build a Config from already-parsed YAML data."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    livekit_data = _section(data, 'livekit')
    recording_data = _section(data, 'recording')
    room_data = _section(data, 'room')
    shutdown_data = _section(data, 'shutdown')
    bridge_data = _section(data, 'bridge')
    logging_data = _section(data, 'logging')

    recording = RecordingConfig(
        base_dir=str(recording_data.get('base_dir', '.')),
        output_dir=str(recording_data.get('output_dir', 'recordings')),
        flush_interval=_as_float(recording_data, 'flush_interval', 10.0),
        video_bits_per_second=_as_int(recording_data, 'video_bits_per_second', 1500000),
        preferred_video_codec=str(recording_data.get('preferred_video_codec', 'h264')),
        fallback_video_codec=str(recording_data.get('fallback_video_codec', 'vp8')),
        audio_codec=str(recording_data.get('audio_codec', 'opus')),
        max_append_bytes=_as_int(recording_data, 'max_append_bytes', 4 * 1024 * 1024),
    )
    if recording.flush_interval <= 0:
        raise ConfigError("recording.flush_interval must be positive")
    if recording.max_append_bytes <= 0:
        raise ConfigError("recording.max_append_bytes must be positive")

    bridge = BridgeConfig(
        max_message_bytes=_as_int(bridge_data, 'max_message_bytes', 64 * 1024 * 1024),
    )
    # An encoded chunk can take up to 6 characters per byte in JSON.
    if bridge.max_message_bytes < recording.max_append_bytes * 6 + 4096:
        raise ConfigError("bridge.max_message_bytes is too small for recording.max_append_bytes")

    return Config(
        livekit=LiveKitConfig(url=str(livekit_data.get('url', 'ws://localhost:7880'))),
        recording=recording,
        room=RoomConfig(
            starting_timeout=_as_float(room_data, 'starting_timeout', 600.0),
            ending_timeout=_as_float(room_data, 'ending_timeout', 60.0),
        ),
        shutdown=ShutdownConfig(
            grace_period=_as_float(shutdown_data, 'grace_period', 10.0),
            process_timeout=_as_float(shutdown_data, 'process_timeout', 10.0),
        ),
        bridge=bridge,
        logging=LoggingConfig(
            level=str(logging_data.get('level', 'INFO')),
            file=logging_data.get('file'),
            max_size_mb=_as_int(logging_data, 'max_size_mb', 10),
            backup_count=_as_int(logging_data, 'backup_count', 5),
        ),
    )


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file. When omitted the default
            path is used and a missing file yields the default configuration.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If an explicitly requested config file doesn't exist.
        ConfigError: If the file content is invalid.
    """
    explicit = config_path is not None
    path = Path(config_path or DEFAULT_CONFIG_PATH)

    if not path.exists():
        if explicit:
            raise FileNotFoundError(
                f"Configuration file not found: {path}\n"
                f"See config.example.yaml for reference."
            )
        return Config()

    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    return build_config(data)


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Room Recorder Configuration
# The access token and room are NOT configured here: they are read from
# standard input as a single line: "<port> <token> <room>".

livekit:
  url: ws://localhost:7880

recording:
  base_dir: .
  output_dir: recordings        # recordings/<room>/<identity>.<kind>/<n>.webm
  flush_interval: 10            # seconds between flushes
  video_bits_per_second: 1500000
  preferred_video_codec: h264   # falls back when unsupported
  fallback_video_codec: vp8
  audio_codec: opus
  max_append_bytes: 4194304     # raw bytes per appendRecording message

room:
  starting_timeout: 600         # leave a room that stays empty after joining
  ending_timeout: 60            # leave a room after the last participant left

shutdown:
  grace_period: 10              # wait for trailing writes before teardown
  process_timeout: 10

bridge:
  max_message_bytes: 67108864

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/recorder.log
  max_size_mb: 10
  backup_count: 5
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


if __name__ == '__main__':
    create_example_config()
    print("Created config.example.yaml")
