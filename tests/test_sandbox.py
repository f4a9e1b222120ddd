"""Tests for the sandboxed session runtime and the session page server."""

import asyncio
import logging

import pytest
from aiohttp import test_utils

from roomrecorder.config import Config
from roomrecorder.errors import RoomRecorderError
from roomrecorder.logger import get_scoped_logger
from roomrecorder.media import TrackKind
from roomrecorder.protocol import ShutdownResult
from roomrecorder.sandbox import BridgeLogHandler, SandboxRuntime
from roomrecorder.server import build_app, session_page_for

from conftest import FakeBackend, FakeRoom, make_participant, make_track, settle


class TestSessionPage(object):
    """Tests for the host's HTTP surface."""

    def test_page_and_health(self) -> None:
        async def scenario():
            page = session_page_for(Config())
            async with test_utils.TestClient(test_utils.TestServer(build_app(page))) as client:
                response = await client.get('/')
                assert response.status == 200
                assert await response.json() == page

                response = await client.get('/health')
                assert await response.json() == {'status': 'ok'}

        asyncio.run(scenario())

    def test_page_content(self) -> None:
        page = session_page_for(Config())

        assert page['livekit']['url'] == 'ws://localhost:7880'
        assert page['recording']['flush_interval'] == 10.0
        assert page['room'] == {'starting_timeout': 600.0, 'ending_timeout': 60.0}


class TestBridgeLogHandler(object):
    """Tests for forwarding sandbox logs to the host."""

    def test_levels_are_mapped(self, host) -> None:
        logger = logging.getLogger('room_recorder.test_bridge_log')
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        handler = BridgeLogHandler(host)
        logger.addHandler(handler)
        try:
            logger.debug('d')
            logger.info('i')
            logger.warning('w')
            logger.error('e')
        finally:
            logger.removeHandler(handler)

        assert host.logs == [('debug', 'd'), ('info', 'i'), ('error', 'w'), ('error', 'e')]

    def test_scope_is_prefixed(self, host) -> None:
        base = logging.getLogger('room_recorder.test_bridge_scope')
        base.setLevel(logging.INFO)
        base.propagate = False
        handler = BridgeLogHandler(host)
        base.addHandler(handler)
        try:
            get_scoped_logger('alice', 'test_bridge_scope').info('joined')
        finally:
            base.removeHandler(handler)

        assert host.logs == [('info', '[alice] joined')]


class TestSandboxRuntime(object):
    """Tests for navigate/run/shutdown delegation."""

    def test_shutdown_before_navigate(self, host) -> None:
        runtime = SandboxRuntime(host)

        result = asyncio.run(runtime.shutdown())

        assert result == ShutdownResult(recorders_stopped=0, room_disconnected=False)

    def test_run_before_navigate(self, host) -> None:
        runtime = SandboxRuntime(host)

        with pytest.raises(RoomRecorderError):
            asyncio.run(runtime.run('token', 'room'))

    def test_navigate_builds_session_from_page(self, host) -> None:
        async def scenario():
            config = Config()
            config.room.ending_timeout = 42.0
            page = session_page_for(config)
            room = FakeRoom([make_participant('alice', make_track('TRa', TrackKind.AUDIO))])
            backend = FakeBackend()
            urls = []

            def room_factory(url):
                urls.append(url)
                return room

            runtime = SandboxRuntime(host, room_factory=room_factory, backend_factory=lambda: backend)
            async with test_utils.TestServer(build_app(page)) as server:
                await runtime.navigate(str(server.make_url('/')))

            assert urls == ['ws://localhost:7880']
            assert runtime.controller.settings.ending_timeout == 42.0

            result = await runtime.run('token', 'room')
            await settle()
            assert result.room_sid == 'RM123'
            assert len(backend.captures) == 1

            shutdown = await runtime.shutdown()
            assert shutdown.recorders_stopped == 1
            await runtime.close()

        asyncio.run(scenario())
