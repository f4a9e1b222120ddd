"""Tests for the host-side shutdown sequence."""

import asyncio
import socket
from types import SimpleNamespace

from roomrecorder.bridge import BridgeChannel
from roomrecorder.codec import encode
from roomrecorder.config import Config, ShutdownConfig, StartupLine
from roomrecorder.errors import SandboxExitedError
from roomrecorder.orchestrator import SessionOrchestrator, format_error
from roomrecorder.protocol import (
    HostProxy,
    RunResult,
    SessionEndpoints,
    ShutdownResult,
    register_session_endpoints,
)
from roomrecorder.recording_store import RecordingStore

from conftest import settle


STARTUP = StartupLine(port=8080, token='secret', room='standup')


class FakeServer:
    def __init__(self, events):
        self.events = events
        self.url = 'http://127.0.0.1:8080/'

    async def start(self, port):
        self.events.append('server.start')

    async def stop_accepting(self):
        self.events.append('server.stop_accepting')

    async def cleanup(self):
        self.events.append('server.cleanup')


class FakeSession(SessionEndpoints):
    def __init__(self, events, fail_on=()):
        self.events = events
        self.fail_on = set(fail_on)

    def _record(self, name):
        self.events.append(name)
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    async def navigate(self, url):
        self._record('navigate')

    async def run(self, token, room_name):
        self._record('run')
        return RunResult(room_sid='RM1', local_participant_sid='PA1')

    async def shutdown(self):
        self._record('shutdown')
        return ShutdownResult(recorders_stopped=1, room_disconnected=True)

    async def close(self):
        self._record('close')


class FakeSandbox:
    """Runs the session endpoints in-process on the other end of a socket pair."""

    def __init__(self, session, events):
        self.session = session
        self.events = events
        self.process = None
        self.child = None

    async def launch(self):
        host_sock, child_sock = socket.socketpair()
        host_reader, host_writer = await asyncio.open_connection(sock=host_sock)
        child_reader, child_writer = await asyncio.open_connection(sock=child_sock)
        self.child = BridgeChannel(child_reader, child_writer, name='sandbox')
        register_session_endpoints(self.child, self.session)
        self.child.start()
        self.process = SimpleNamespace(returncode=None)
        self.events.append('launch')
        return BridgeChannel(host_reader, host_writer, name='host')

    async def terminate(self, timeout=10.0):
        self.events.append('terminate')
        await self.child.close()
        return 0


class HangingSandbox(FakeSandbox):
    """Spawns its process, then never finishes opening the bridge."""

    async def launch(self):
        self.process = SimpleNamespace(returncode=None)
        self.events.append('spawned')
        await asyncio.Event().wait()

    async def terminate(self, timeout=10.0):
        self.events.append('terminate')
        return 0


def make_orchestrator(events, tmp_path, fail_on=(), sandbox_class=FakeSandbox):
    config = Config(shutdown=ShutdownConfig(grace_period=0.0, process_timeout=1.0))
    session = FakeSession(events, fail_on)
    sandbox = sandbox_class(session, events)
    orchestrator = SessionOrchestrator(
        config,
        store=RecordingStore(str(tmp_path)),
        sandbox=sandbox,
        server=FakeServer(events),
    )
    return orchestrator, sandbox


class TestStartup(object):
    """Tests for bringing the session up."""

    def test_stages_run_in_order(self, tmp_path) -> None:
        async def scenario():
            events = []
            orchestrator, _ = make_orchestrator(events, tmp_path)

            await orchestrator.start(STARTUP)

            assert events == ['server.start', 'launch', 'navigate', 'run']
            assert orchestrator.room_sid == 'RM1'
            assert orchestrator.local_participant_sid == 'PA1'

            await orchestrator.close()

        asyncio.run(scenario())

    def test_startup_failure_closes_with_error(self, tmp_path) -> None:
        async def scenario():
            events = []
            orchestrator, _ = make_orchestrator(events, tmp_path, fail_on={'run'})

            await orchestrator.start(STARTUP)

            assert await orchestrator.wait_closed() == 1
            assert 'shutdown' in events
            assert events[-1] == 'server.cleanup'

        asyncio.run(scenario())

    def test_close_requested_during_startup(self, tmp_path) -> None:
        """A close requested before a stage finishes stops the startup."""
        async def scenario():
            events = []
            orchestrator, _ = make_orchestrator(events, tmp_path)
            orchestrator.parent_close()

            await orchestrator.start(STARTUP)

            assert await asyncio.wait_for(orchestrator.wait_closed(), 5) == 0
            assert 'run' not in events

        asyncio.run(scenario())

    def test_close_while_sandbox_is_launching(self, tmp_path) -> None:
        """A process spawned by an interrupted launch is still torn down."""
        async def scenario():
            events = []
            orchestrator, _ = make_orchestrator(events, tmp_path, sandbox_class=HangingSandbox)
            running = asyncio.ensure_future(orchestrator.run(STARTUP))
            await settle()
            assert events == ['server.start', 'spawned']

            orchestrator.parent_close()

            assert await asyncio.wait_for(running, 5) == 0
            assert 'terminate' in events
            assert events[-1] == 'server.cleanup'

        asyncio.run(scenario())


class TestClose(object):
    """Tests for the shutdown sequence."""

    def test_shutdown_sequence_order(self, tmp_path) -> None:
        """Drain first, then stop the server, then tear down page and process."""
        async def scenario():
            events = []
            orchestrator, _ = make_orchestrator(events, tmp_path)
            await orchestrator.start(STARTUP)
            events.clear()

            await orchestrator.close()

            assert events == [
                'shutdown',
                'server.stop_accepting',
                'close',
                'terminate',
                'server.cleanup',
            ]
            assert await orchestrator.wait_closed() == 0

        asyncio.run(scenario())

    def test_close_is_idempotent(self, tmp_path) -> None:
        async def scenario():
            events = []
            orchestrator, _ = make_orchestrator(events, tmp_path)
            await orchestrator.start(STARTUP)

            await asyncio.gather(orchestrator.close(), orchestrator.close())
            await orchestrator.close()

            assert events.count('shutdown') == 1
            assert events.count('terminate') == 1

        asyncio.run(scenario())

    def test_failing_stage_does_not_abort_teardown(self, tmp_path) -> None:
        async def scenario():
            events = []
            orchestrator, _ = make_orchestrator(events, tmp_path, fail_on={'shutdown'})
            await orchestrator.start(STARTUP)

            await orchestrator.close()

            assert 'server.stop_accepting' in events
            assert 'close' in events
            assert 'terminate' in events
            assert await orchestrator.wait_closed() == 0

        asyncio.run(scenario())

    def test_parent_close_with_error_exits_1(self, tmp_path) -> None:
        async def scenario():
            events = []
            orchestrator, sandbox = make_orchestrator(events, tmp_path)
            await orchestrator.start(STARTUP)

            await HostProxy(sandbox.child).parent_close('Room ended')

            assert await asyncio.wait_for(orchestrator.wait_closed(), 5) == 1
            assert 'shutdown' in events

        asyncio.run(scenario())

    def test_parent_close_without_error_exits_0(self, tmp_path) -> None:
        async def scenario():
            events = []
            orchestrator, sandbox = make_orchestrator(events, tmp_path)
            await orchestrator.start(STARTUP)

            await HostProxy(sandbox.child).parent_close()

            assert await asyncio.wait_for(orchestrator.wait_closed(), 5) == 0

        asyncio.run(scenario())

    def test_unexpected_sandbox_exit(self, tmp_path) -> None:
        async def scenario():
            events = []
            orchestrator, sandbox = make_orchestrator(events, tmp_path)
            await orchestrator.start(STARTUP)
            events.clear()

            await sandbox.child.close()

            assert await asyncio.wait_for(orchestrator.wait_closed(), 5) == 1
            assert 'shutdown' not in events
            assert 'terminate' in events

        asyncio.run(scenario())


class TestHostEndpoints(object):
    """Tests for file writes and logs arriving over the bridge."""

    def test_recording_written_through_bridge(self, tmp_path) -> None:
        async def scenario():
            events = []
            orchestrator, sandbox = make_orchestrator(events, tmp_path)
            await orchestrator.start(STARTUP)
            host = HostProxy(sandbox.child)

            filepath = ['recordings', 'standup', 'alice.audio', '1.webm']
            metapath = ['recordings', 'standup', 'alice.audio', '1.json']
            await host.create_recording(filepath, metapath, 'audio/webm;codecs=opus')
            first = await host.append_recording(filepath, encode(b'\x1aE\xdf\xa3'), 0.0)
            second = await host.append_recording(filepath, encode(b'\x00\xff'), 0.0)
            host.log('info', 'hello from the session')

            await orchestrator.close()
            return first, second

        assert asyncio.run(scenario()) == (4, 2)
        data = (tmp_path / 'recordings/standup/alice.audio/1.webm').read_bytes()
        assert data == b'\x1aE\xdf\xa3\x00\xff'


class TestFormatError(object):
    def test_exception_includes_traceback(self) -> None:
        try:
            raise SandboxExitedError("gone")
        except SandboxExitedError as e:
            text = format_error(e)

        assert 'Traceback' in text
        assert 'SandboxExitedError: gone' in text

    def test_string(self) -> None:
        assert format_error('Room ended') == 'Room ended'
