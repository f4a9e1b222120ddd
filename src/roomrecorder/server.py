"""
HTTP server of the host process.

Serves the session page the sandboxed session navigates to, plus a health
endpoint.
"""

import time
from typing import Any, Dict, Optional

from aiohttp import web

from .logger import get_logger


PAGE_KEY = web.AppKey("session_page", dict)


@web.middleware
async def access_log_middleware(request: web.Request, handler):
    started = time.monotonic()
    response = await handler(request)
    elapsed = (time.monotonic() - started) * 1000
    get_logger('server').debug(f"{request.method} {request.path_qs} {response.status} {elapsed:.1f}ms")
    return response


async def session_page(request: web.Request) -> web.Response:
    return web.json_response(request.app[PAGE_KEY])


async def health(_: web.Request) -> web.Response:
    return web.json_response({'status': 'ok'})


def build_app(page: Dict[str, Any]) -> web.Application:
    app = web.Application(middlewares=[access_log_middleware])
    app[PAGE_KEY] = page
    app.router.add_get("/", session_page)
    app.router.add_get("/health", health)
    return app


class SessionServer:
    """
    Serves the session page on localhost.

    Example:
        ```python
        server = SessionServer(page)
        await server.start(8080)
        ...
        await server.stop_accepting()
        await server.cleanup()
        ```
    """

    def __init__(self, page: Dict[str, Any], host: str = "127.0.0.1"):
        self.page = page
        self.host = host
        self.port: Optional[int] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._logger = get_logger('server')

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    async def start(self, port: int) -> None:
        self._logger.debug(f"Starting HTTP server on port {port}...")
        self._runner = web.AppRunner(build_app(self.page), access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, port)
        await self._site.start()
        self.port = port
        self._logger.debug(f"Started HTTP server on port {port}.")

    async def stop_accepting(self) -> None:
        """Stop listening; requests already being served complete."""
        if self._site is None:
            return
        self._logger.debug('Stopping HTTP server...')
        site, self._site = self._site, None
        await site.stop()
        self._logger.debug('Stopped HTTP server.')

    async def cleanup(self) -> None:
        await self.stop_accepting()
        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()


def session_page_for(config) -> Dict[str, Any]:
    """Session page content for a Config."""
    return {
        'livekit': {'url': config.livekit.url},
        'recording': {
            'output_dir': config.recording.output_dir,
            'flush_interval': config.recording.flush_interval,
            'video_bits_per_second': config.recording.video_bits_per_second,
            'preferred_video_codec': config.recording.preferred_video_codec,
            'fallback_video_codec': config.recording.fallback_video_codec,
            'audio_codec': config.recording.audio_codec,
            'max_append_bytes': config.recording.max_append_bytes,
        },
        'room': {
            'starting_timeout': config.room.starting_timeout,
            'ending_timeout': config.room.ending_timeout,
        },
    }
