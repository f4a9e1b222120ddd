"""
Room Recorder - records every audio/video track of a conferencing room.

Reads ``port token roomIdentifier`` from standard input, then runs one
recording session until the room empties, the room ends or a signal arrives.
"""

import asyncio
import os
import sys

from .config import DEFAULT_CONFIG_PATH, load_config, parse_startup_line
from .errors import ConfigError
from .logger import get_logger, setup_logging
from .orchestrator import SessionOrchestrator


ENV_CONFIG_PATH = "ROOMRECORDER_CONFIG"


async def read_startup_line() -> str:
    """Read the single startup line from stdin without blocking the loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, sys.stdin.readline)


async def main() -> int:
    """Main entry point. Returns the process exit code."""
    print(f"PID={os.getpid()}\n", flush=True)

    # Load configuration
    config_path = os.environ.get(ENV_CONFIG_PATH)
    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        print(f"Please create {config_path or DEFAULT_CONFIG_PATH} from config.example.yaml")
        return 1
    except ConfigError as e:
        print(f"Configuration error: {e}")
        return 1

    # Setup logging
    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )
    logger = get_logger('app')

    try:
        startup = parse_startup_line(await read_startup_line())
    except ConfigError as e:
        logger.error(f"Invalid startup line: {e}")
        return 1
    logger.debug(f"Starting session: {startup!r}")

    orchestrator = SessionOrchestrator(config)
    try:
        return await orchestrator.run(startup)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    run()
