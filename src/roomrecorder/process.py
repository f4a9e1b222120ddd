"""
Sandbox child process management.

Launches ``python -m roomrecorder.sandbox``, opens the bridge on its
stdin/stdout and tears the process down on shutdown.
"""

import asyncio
import os
import sys
from typing import List, Optional

from .bridge import BridgeChannel, DEFAULT_MAX_MESSAGE_BYTES
from .logger import get_logger
from .sandbox import ENV_LOG_LEVEL, ENV_MAX_MESSAGE_BYTES


SANDBOX_MODULE = "roomrecorder.sandbox"


class SandboxProcess:
    """The sandboxed session's child process."""

    def __init__(
        self,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        log_level: str = "INFO",
        command: Optional[List[str]] = None
    ):
        self.max_message_bytes = max_message_bytes
        self.log_level = log_level
        self.command = command or [sys.executable, "-m", SANDBOX_MODULE]
        self.process: Optional[asyncio.subprocess.Process] = None
        self._logger = get_logger('process')

    async def launch(self) -> BridgeChannel:
        """Start the child and return an unstarted bridge channel to it."""
        env = dict(os.environ)
        env[ENV_MAX_MESSAGE_BYTES] = str(self.max_message_bytes)
        env[ENV_LOG_LEVEL] = self.log_level

        self._logger.debug('Launching sandbox...')
        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=env,
            limit=self.max_message_bytes,
        )
        self._logger.debug(f"Launched sandbox (pid {self.process.pid}).")

        return BridgeChannel(
            self.process.stdout,
            self.process.stdin,
            name='host',
            max_message_bytes=self.max_message_bytes,
        )

    async def terminate(self, timeout: float = 10.0) -> Optional[int]:
        """
        Wait for the child to exit, then terminate it, then kill it.

        Returns:
            The child's exit code, None if it was never launched.
        """
        process = self.process
        if process is None:
            return None

        try:
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
                self._logger.debug('Sandbox exited.')
            except asyncio.TimeoutError:
                self._logger.warning('Sandbox did not exit, sending SIGTERM...')
                process.terminate()

                try:
                    await asyncio.wait_for(process.wait(), timeout=5)
                except asyncio.TimeoutError:
                    self._logger.warning('Force killing sandbox...')
                    process.kill()
                    await process.wait()
        except ProcessLookupError:
            pass

        return process.returncode
