"""
Tests for ffmpeg process supervision

Tests cover:
- Start from a pending session, readiness on first stderr output
- Exit code classification before and after readiness
- Spawn failures
- Stop, stop during start and stop_all
- Long-running ffmpeg output and overlapping starts of one session
"""
import asyncio
import signal
import sys
from unittest.mock import AsyncMock, Mock, patch

import pytest

from simplicam.config.camera import CameraOptions
from simplicam.core.exceptions import ResolutionError, StreamExitError, StreamSpawnError, StreamStartError
from simplicam.core.metrics import REGISTRY
from simplicam.services.stream_sessions import (
    SessionRegistry,
    StreamRequest,
    StreamRequestType,
    StreamState,
)
from simplicam.services.stream_supervisor import StreamSupervisor, is_normal_exit
from tests.conftest import FakeProcess, make_pending_session

SPAWN = "simplicam.services.stream_supervisor.asyncio.create_subprocess_exec"


def _start_request(session_id="session-1"):
    return StreamRequest(session_id=session_id, type=StreamRequestType.START)


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def supervisor(camera_details, cloud_client, registry, resolver):
    return StreamSupervisor(
        camera=camera_details,
        options=CameraOptions(),
        registry=registry,
        client=cloud_client,
        resolver=resolver,
        on_runtime_failure=Mock(),
        ffmpeg_path="ffmpeg",
        constrained_binary=False,
    )


async def _drain(task):
    if task is not None:
        await asyncio.wait_for(task, timeout=1)


class TestIsNormalExit:

    @pytest.mark.parametrize("code", [None, 0, 255, -9, -15])
    def test_normal(self, code):
        assert is_normal_exit(code) is True

    @pytest.mark.parametrize("code", [1, 69, 254])
    def test_abnormal(self, code):
        assert is_normal_exit(code) is False


class TestStart:

    @pytest.mark.asyncio
    async def test_no_pending_session(self, supervisor):
        with patch(SPAWN, AsyncMock()) as mock_spawn:
            state = await supervisor.start("session-1", _start_request())

        assert state == StreamState.NONE
        mock_spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_streams_after_first_output(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        process = FakeProcess([b"frame=1", b"frame=2", b"frame=3"], hold_open=True)

        with patch(SPAWN, AsyncMock(return_value=process)) as mock_spawn:
            state = await supervisor.start("session-1", _start_request())

        assert state == StreamState.STREAMING
        assert registry.state_of("session-1") == StreamState.STREAMING
        assert registry.pending_ids == []

        args, kwargs = mock_spawn.call_args
        assert args[0] == "ffmpeg"
        assert "-re" in args
        assert kwargs["stderr"] == asyncio.subprocess.PIPE

        task = registry.get_ongoing("session-1").monitor_task
        await supervisor.stop("session-1")
        await _drain(task)

        process.kill.assert_called_once()
        assert registry.state_of("session-1") == StreamState.NONE

    @pytest.mark.asyncio
    async def test_readiness_fires_once_for_many_lines(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        lines = [f"frame={n}".encode() for n in range(50)]
        process = FakeProcess(lines, returncode=0)

        with patch(SPAWN, AsyncMock(return_value=process)):
            state = await supervisor.start("session-1", _start_request())

        assert state == StreamState.STREAMING
        await asyncio.sleep(0.05)
        supervisor.on_runtime_failure.assert_not_called()
        assert registry.ongoing_ids == []

    @pytest.mark.asyncio
    async def test_records_success_metric(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        process = FakeProcess([b"frame=1"], hold_open=True)
        before = REGISTRY.get_sample_value(
            "simplicam_stream_starts_total", {"camera_id": "cam-001", "status": "success"}
        ) or 0.0

        with patch(SPAWN, AsyncMock(return_value=process)):
            await supervisor.start("session-1", _start_request())

        after = REGISTRY.get_sample_value(
            "simplicam_stream_starts_total", {"camera_id": "cam-001", "status": "success"}
        )
        assert after == before + 1

        task = registry.get_ongoing("session-1").monitor_task
        await supervisor.stop("session-1")
        await _drain(task)

    @pytest.mark.asyncio
    async def test_interrupt_exit_before_output_is_stopped(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        process = FakeProcess([], returncode=255)

        with patch(SPAWN, AsyncMock(return_value=process)):
            state = await supervisor.start("session-1", _start_request())

        assert state == StreamState.STOPPED
        assert registry.ongoing_ids == []
        supervisor.on_runtime_failure.assert_not_called()

    @pytest.mark.asyncio
    async def test_abnormal_exit_before_output_fails_start(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        process = FakeProcess([], returncode=1)

        with patch(SPAWN, AsyncMock(return_value=process)):
            with pytest.raises(StreamExitError) as exc_info:
                await supervisor.start("session-1", _start_request())

        assert exc_info.value.exit_code == 1
        assert str(exc_info.value) == "Error: FFmpeg exited with code 1"
        assert registry.ongoing_ids == []
        supervisor.on_runtime_failure.assert_not_called()

    @pytest.mark.asyncio
    async def test_spawn_failure(self, supervisor, registry):
        registry.put_pending(make_pending_session())

        with patch(SPAWN, AsyncMock(side_effect=FileNotFoundError("ffmpeg"))):
            with pytest.raises(StreamSpawnError):
                await supervisor.start("session-1", _start_request())

        assert registry.ongoing_ids == []
        assert registry.state_of("session-1") == StreamState.NONE

    @pytest.mark.asyncio
    async def test_resolution_failure(self, supervisor, registry, resolver):
        registry.put_pending(make_pending_session())
        resolver.resolve.side_effect = ResolutionError("media.simplisafe.com")

        with patch(SPAWN, AsyncMock()) as mock_spawn:
            with pytest.raises(ResolutionError):
                await supervisor.start("session-1", _start_request())

        mock_spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_runtime_failure_invokes_hook(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        process = FakeProcess([b"frame=1"], returncode=1)

        with patch(SPAWN, AsyncMock(return_value=process)):
            state = await supervisor.start("session-1", _start_request())

        assert state == StreamState.STREAMING
        await asyncio.sleep(0.05)
        supervisor.on_runtime_failure.assert_called_once_with("session-1")
        assert registry.ongoing_ids == []

    @pytest.mark.asyncio
    async def test_runtime_hook_errors_are_contained(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        supervisor.on_runtime_failure.side_effect = RuntimeError("accessory gone")
        process = FakeProcess([b"frame=1"], returncode=1)

        with patch(SPAWN, AsyncMock(return_value=process)):
            await supervisor.start("session-1", _start_request())

        await asyncio.sleep(0.05)
        supervisor.on_runtime_failure.assert_called_once()


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_unknown_is_noop(self, supervisor, registry):
        await supervisor.stop("never-started")

        assert registry.ongoing_ids == []
        assert registry.stop_requested == set()

    @pytest.mark.asyncio
    async def test_stop_discards_pending(self, supervisor, registry):
        registry.put_pending(make_pending_session())

        await supervisor.stop("session-1")

        assert registry.pending_ids == []

    @pytest.mark.asyncio
    async def test_kill_failure_is_logged(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        process = FakeProcess([b"frame=1"], hold_open=True)

        with patch(SPAWN, AsyncMock(return_value=process)):
            await supervisor.start("session-1", _start_request())

        task = registry.get_ongoing("session-1").monitor_task
        process.kill.side_effect = ProcessLookupError()

        await supervisor.stop("session-1")

        assert registry.ongoing_ids == []
        process.stderr.close()
        await _drain(task)

    @pytest.mark.asyncio
    async def test_stop_during_resolution_skips_spawn(self, supervisor, registry, resolver):
        registry.put_pending(make_pending_session())

        async def resolve_then_stop():
            await supervisor.stop("session-1")
            return "52.1.2.3"

        resolver.resolve.side_effect = resolve_then_stop

        with patch(SPAWN, AsyncMock()) as mock_spawn:
            state = await supervisor.start("session-1", _start_request())

        assert state == StreamState.STOPPED
        mock_spawn.assert_not_called()
        assert registry.stop_requested == set()
        assert registry.starting == {}

    @pytest.mark.asyncio
    async def test_stop_during_spawn_kills_process(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        process = FakeProcess([b"frame=1"], hold_open=True)

        async def spawn_then_stop(*args, **kwargs):
            await supervisor.stop("session-1")
            return process

        with patch(SPAWN, AsyncMock(side_effect=spawn_then_stop)):
            state = await supervisor.start("session-1", _start_request())

        assert state == StreamState.STOPPED
        process.kill.assert_called_once()
        assert registry.ongoing_ids == []
        await asyncio.sleep(0.05)

    @pytest.mark.asyncio
    async def test_stop_all(self, supervisor, registry):
        processes = {
            "session-1": FakeProcess([b"frame=1"], hold_open=True, pid=1),
            "session-2": FakeProcess([b"frame=1"], hold_open=True, pid=2),
        }
        for session_id, process in processes.items():
            registry.put_pending(make_pending_session(session_id=session_id))
            with patch(SPAWN, AsyncMock(return_value=process)):
                await supervisor.start(session_id, _start_request(session_id))

        tasks = [registry.get_ongoing(session_id).monitor_task for session_id in processes]

        await supervisor.stop_all()
        for task in tasks:
            await _drain(task)

        assert registry.ongoing_ids == []
        for process in processes.values():
            process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_restart_replaces_running_process(self, supervisor, registry):
        first = FakeProcess([b"frame=1"], hold_open=True, pid=1)
        second = FakeProcess([b"frame=1"], hold_open=True, pid=2)

        registry.put_pending(make_pending_session())
        with patch(SPAWN, AsyncMock(return_value=first)):
            await supervisor.start("session-1", _start_request())
        first_task = registry.get_ongoing("session-1").monitor_task

        registry.put_pending(make_pending_session())
        with patch(SPAWN, AsyncMock(return_value=second)):
            await supervisor.start("session-1", _start_request())
        second_task = registry.get_ongoing("session-1").monitor_task

        await _drain(first_task)
        first.kill.assert_called_once()
        assert registry.get_ongoing("session-1").process is second

        await supervisor.stop("session-1")
        await _drain(second_task)


# Writes a banner, then ~130 KiB of carriage-return progress lines, then idles
# like a live stream until killed.
PROGRESS_SCRIPT = """
import sys, time
sys.stderr.write("ffmpeg version n6.1 Copyright (c) 2000-2023 the FFmpeg developers\\n")
for n in range(1500):
    sys.stderr.write("frame=%5d fps= 30 q=-1.0 size=%8dkB time=00:00:%02d.00 bitrate=1000.0kbits/s speed=1x    \\r" % (n, n * 10, n % 60))
sys.stderr.flush()
time.sleep(60)
"""

_real_spawn = asyncio.create_subprocess_exec


class TestLongRunningOutput:

    @pytest.mark.asyncio
    async def test_progress_output_does_not_lose_process(self, supervisor, registry):
        registry.put_pending(make_pending_session())

        async def spawn_progress_writer(*args, **kwargs):
            return await _real_spawn(sys.executable, "-c", PROGRESS_SCRIPT, **kwargs)

        with patch(SPAWN, AsyncMock(side_effect=spawn_progress_writer)):
            state = await supervisor.start("session-1", _start_request())

        assert state == StreamState.STREAMING
        ongoing = registry.get_ongoing("session-1")
        process = ongoing.process

        # Let the monitor drain well past a line reader's 64 KiB limit
        await asyncio.sleep(1.0)
        assert registry.get_ongoing("session-1") is ongoing
        assert process.returncode is None

        await supervisor.stop("session-1")
        await asyncio.wait_for(process.wait(), timeout=5)
        await _drain(ongoing.monitor_task)

        assert process.returncode == -signal.SIGKILL
        assert registry.ongoing_ids == []
        supervisor.on_runtime_failure.assert_not_called()

    @pytest.mark.asyncio
    async def test_monitor_error_kills_process(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        process = FakeProcess([], hold_open=True)
        process.stderr.read = AsyncMock(side_effect=ValueError("Separator is not found, and chunk exceed the limit"))

        with patch(SPAWN, AsyncMock(return_value=process)):
            with pytest.raises(StreamStartError):
                await supervisor.start("session-1", _start_request())

        process.kill.assert_called_once()
        assert registry.ongoing_ids == []

    @pytest.mark.asyncio
    async def test_monitor_error_while_streaming_kills_process(self, supervisor, registry):
        registry.put_pending(make_pending_session())
        process = FakeProcess([], hold_open=True)
        process.stderr.read = AsyncMock(side_effect=[b"frame=1\r", OSError("pipe broken")])

        with patch(SPAWN, AsyncMock(return_value=process)):
            state = await supervisor.start("session-1", _start_request())

        assert state == StreamState.STREAMING
        await asyncio.sleep(0.05)

        process.kill.assert_called_once()
        assert registry.ongoing_ids == []


class TestOverlappingStarts:

    @pytest.mark.asyncio
    async def test_stop_during_second_start_is_honoured(self, supervisor, registry, resolver):
        gates = [asyncio.Event(), asyncio.Event()]
        waiting = list(gates)

        async def gated_resolve():
            await waiting.pop(0).wait()
            return "52.1.2.3"

        resolver.resolve.side_effect = gated_resolve
        first_process = FakeProcess([b"frame=1"], hold_open=True, pid=1)
        spawn = AsyncMock(return_value=first_process)

        with patch(SPAWN, spawn):
            registry.put_pending(make_pending_session())
            first = asyncio.create_task(supervisor.start("session-1", _start_request()))
            await asyncio.sleep(0.01)

            registry.put_pending(make_pending_session())
            second = asyncio.create_task(supervisor.start("session-1", _start_request()))
            await asyncio.sleep(0.01)

            gates[0].set()
            assert await first == StreamState.STREAMING
            first_task = registry.get_ongoing("session-1").monitor_task

            await supervisor.stop("session-1")
            gates[1].set()
            assert await second == StreamState.STOPPED

        spawn.assert_awaited_once()
        first_process.kill.assert_called_once()
        await _drain(first_task)
        assert registry.ongoing_ids == []
        assert registry.starting == {}
        assert registry.stop_requested == set()
