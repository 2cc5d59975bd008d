"""
ffmpeg process supervision for HomeKit stream sessions.

Stream Flow:
    HomeKit requests stream -> start(session_id, request)
            |
    Pop the pending session, resolve the media server, build arguments
            |
    Spawn ffmpeg, wait for the first stderr output (readiness)
            |
    HomeKit ends stream -> stop(session_id) -> SIGKILL

Exit handling:
    0, 255 or killed by a signal: normal stop
    any other code before readiness: the start fails with StreamExitError
    any other code while streaming: the runtime failure hook tears the
    HomeKit session down
"""
import asyncio
import logging
from typing import Callable, Optional

from simplicam.config.camera import CameraOptions
from simplicam.core.config import running_in_container, settings
from simplicam.core.exceptions import (
    ResolutionError,
    StreamExitError,
    StreamRuntimeError,
    StreamSpawnError,
    StreamStartError,
    TerminationError,
)
from simplicam.core.logging_config import sanitize_log_value
from simplicam.core.metrics import record_stream_start, update_active_streams
from simplicam.schemas.camera import CameraDetails
from simplicam.services.address_resolver import AddressResolver, get_address_resolver
from simplicam.services.cloud_client import CloudClient
from simplicam.services.ffmpeg_args import build_ffmpeg_args, sanitize_ffmpeg_command
from simplicam.services.stream_sessions import (
    OngoingSession,
    PendingSession,
    SessionRegistry,
    StreamRequest,
    StreamState,
)

logger = logging.getLogger(__name__)

# Exit codes ffmpeg reports when it is stopped rather than failing
NORMAL_EXIT_CODES = (0, 255)

STDERR_CHUNK_SIZE = 4096


def is_normal_exit(code: Optional[int]) -> bool:
    """True for a clean exit, ffmpeg's interrupt code, or signal termination."""
    return code is None or code < 0 or code in NORMAL_EXIT_CODES


class StreamSupervisor:
    """
    Starts, monitors and stops the transcoders of one camera.

    Holds at most one live process per session identifier.

    Attributes:
        camera: Camera record
        options: Per-camera options
        registry: Pending and ongoing sessions
        ffmpeg_path: Binary to spawn
        constrained_binary: Bundled container ffmpeg without a custom path
        on_runtime_failure: Called with the session id when a running stream dies
    """

    def __init__(
        self,
        camera: CameraDetails,
        options: CameraOptions,
        registry: SessionRegistry,
        client: CloudClient,
        resolver: Optional[AddressResolver] = None,
        on_runtime_failure: Optional[Callable[[str], None]] = None,
        ffmpeg_path: Optional[str] = None,
        constrained_binary: Optional[bool] = None,
    ):
        self.camera = camera
        self.options = options
        self.registry = registry
        self.client = client
        self.resolver = resolver or get_address_resolver()
        self.on_runtime_failure = on_runtime_failure
        self.ffmpeg_path = ffmpeg_path or options.ffmpeg_path or settings.FFMPEG_PATH
        if constrained_binary is None:
            constrained_binary = running_in_container() and not options.ffmpeg_path
        self.constrained_binary = constrained_binary

    @property
    def camera_id(self) -> str:
        return self.camera.uuid

    def _update_active_count(self) -> None:
        update_active_streams(self.camera_id, len(self.registry.ongoing))

    async def start(self, session_id: str, request: StreamRequest) -> StreamState:
        """
        Start the transcoder for a negotiated session.

        Args:
            session_id: Session identifier from prepare
            request: Viewer's selected stream parameters

        Returns:
            STREAMING once ffmpeg produced output, STOPPED if it stopped
            normally (or was stopped) first, NONE if nothing was prepared

        Raises:
            ResolutionError: Media host unresolvable and nothing cached
            StreamSpawnError: ffmpeg could not be launched
            StreamExitError: ffmpeg exited abnormally before producing output
        """
        pending = self.registry.pop_pending(session_id)
        if pending is None:
            logger.debug(
                f"No pending session {session_id}, ignoring start request",
                extra={"camera_id": self.camera_id, "session_id": session_id}
            )
            return StreamState.NONE

        self.registry.begin_start(session_id)
        try:
            return await self._start(pending, request)
        finally:
            self.registry.end_start(session_id)

    async def _start(self, pending: PendingSession, request: StreamRequest) -> StreamState:
        session_id = pending.session_id

        existing = self.registry.remove_ongoing(session_id)
        if existing is not None:
            logger.info(
                f"Replacing running stream for session {session_id}",
                extra={"camera_id": self.camera_id, "session_id": session_id, "pid": existing.process.pid}
            )
            self._kill(existing)
            self._update_active_count()

        try:
            server_address = await self.resolver.resolve()
        except ResolutionError:
            logger.error(
                f"Camera stream request failed, could not resolve hostname for {self.resolver.hostname}",
                extra={"event_type": "stream_start_failed", "camera_id": self.camera_id, "reason": "resolution"}
            )
            record_stream_start(self.camera_id, "error")
            raise

        if session_id in self.registry.stop_requested:
            record_stream_start(self.camera_id, "stopped")
            return StreamState.STOPPED

        args = build_ffmpeg_args(
            session=pending,
            camera=self.camera,
            request=request,
            options=self.options,
            server_address=server_address,
            access_token=self.client.access_token,
            constrained_binary=self.constrained_binary,
        )
        argv = args.flatten()

        logger.info(
            f"Start streaming video for camera '{self.camera.name}'",
            extra={
                "event_type": "stream_start",
                "camera_id": self.camera_id,
                "camera_name": self.camera.name,
                "session_id": session_id,
                "client_address": pending.address,
                **args.stream_params,
            }
        )
        logger.debug(
            sanitize_ffmpeg_command([self.ffmpeg_path, *argv]),
            extra={"camera_id": self.camera_id, "session_id": session_id}
        )

        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_path,
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(
                f"An error occurred while making stream request: {e}",
                extra={
                    "event_type": "stream_start_failed",
                    "camera_id": self.camera_id,
                    "session_id": session_id,
                    "reason": "spawn",
                    "ffmpeg_path": self.ffmpeg_path,
                    "error": str(e),
                }
            )
            record_stream_start(self.camera_id, "error")
            raise StreamSpawnError(f"Could not launch {self.ffmpeg_path}: {e}") from e

        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()
        ongoing = OngoingSession(session_id=session_id, process=process)
        self.registry.register_ongoing(ongoing)
        ongoing.monitor_task = loop.create_task(
            self._monitor(ongoing, ready),
            name=f"ffmpeg_monitor_{session_id}"
        )
        self._update_active_count()

        if session_id in self.registry.stop_requested:
            await self.stop(session_id)
            record_stream_start(self.camera_id, "stopped")
            return StreamState.STOPPED

        try:
            state = await ready
        except StreamStartError:
            record_stream_start(self.camera_id, "error")
            raise

        record_stream_start(self.camera_id, "success" if state == StreamState.STREAMING else "stopped")
        if state == StreamState.STREAMING:
            logger.info(
                f"Stream started for camera '{self.camera.name}' (PID: {process.pid})",
                extra={
                    "event_type": "stream_started",
                    "camera_id": self.camera_id,
                    "session_id": session_id,
                    "pid": process.pid,
                }
            )
        return state

    async def _monitor(self, ongoing: OngoingSession, ready: asyncio.Future) -> None:
        """
        Relay stderr, fire readiness on the first output and handle the exit.

        stderr is read in chunks rather than lines: ffmpeg ends its progress
        lines with a carriage return, so a line reader would overrun its
        buffer after a few minutes of streaming.
        """
        process = ongoing.process
        try:
            if process.stderr is not None:
                while True:
                    chunk = await process.stderr.read(STDERR_CHUNK_SIZE)
                    if not chunk:
                        break
                    if not ready.done():
                        ongoing.state = StreamState.STREAMING
                        ready.set_result(StreamState.STREAMING)
                        logger.debug(
                            "FFmpeg received first frame",
                            extra={"camera_id": self.camera_id, "session_id": ongoing.session_id}
                        )
                    text = chunk.decode("utf-8", errors="replace").strip()
                    if text:
                        logger.debug(
                            sanitize_log_value(text, max_length=500),
                            extra={"camera_id": self.camera_id, "session_id": ongoing.session_id}
                        )
            code = await process.wait()
        except Exception as e:
            logger.error(
                f"Error monitoring ffmpeg output: {e}",
                extra={
                    "event_type": "stream_monitor_error",
                    "camera_id": self.camera_id,
                    "session_id": ongoing.session_id,
                    "error": str(e),
                }
            )
            # Nobody drains the pipe any more; the process must not outlive its session
            self._kill(ongoing)
            self._release(ongoing)
            if not ready.done():
                ready.set_exception(StreamStartError(f"Lost ffmpeg process: {e}"))
            return

        self._handle_exit(ongoing, ready, code)

    def _release(self, ongoing: OngoingSession) -> None:
        if self.registry.get_ongoing(ongoing.session_id) is ongoing:
            self.registry.remove_ongoing(ongoing.session_id)
            self._update_active_count()

    def _handle_exit(self, ongoing: OngoingSession, ready: asyncio.Future, code: Optional[int]) -> None:
        session_id = ongoing.session_id
        self._release(ongoing)

        if is_normal_exit(code):
            ongoing.state = StreamState.STOPPED
            logger.debug(
                "Camera stopped streaming",
                extra={
                    "camera_id": self.camera_id,
                    "session_id": session_id,
                    "exit_code": code,
                    "duration_seconds": ongoing.duration_seconds,
                }
            )
            if not ready.done():
                ready.set_result(StreamState.STOPPED)
            return

        ongoing.state = StreamState.FAILED
        if not ready.done():
            logger.error(
                f"Error: FFmpeg exited with code {code}",
                extra={"event_type": "stream_start_failed", "camera_id": self.camera_id, "session_id": session_id}
            )
            ready.set_exception(StreamExitError(code))
            return

        error = StreamRuntimeError(code)
        logger.error(
            str(error),
            extra={
                "event_type": "stream_runtime_failure",
                "camera_id": self.camera_id,
                "session_id": session_id,
                "exit_code": code,
                "duration_seconds": ongoing.duration_seconds,
            }
        )
        if self.on_runtime_failure is not None:
            try:
                self.on_runtime_failure(session_id)
            except Exception as e:
                logger.error(
                    f"Error tearing down stream session {session_id}: {e}",
                    extra={"camera_id": self.camera_id, "session_id": session_id, "error": str(e)}
                )

    def _kill(self, ongoing: OngoingSession) -> None:
        try:
            ongoing.process.kill()
        except (ProcessLookupError, OSError) as e:
            error = TerminationError(f"Error occurred terminating the video process: {e}")
            logger.error(
                str(error),
                extra={
                    "event_type": "stream_stop_error",
                    "camera_id": self.camera_id,
                    "session_id": ongoing.session_id,
                    "error": str(e),
                }
            )

    async def stop(self, session_id: str) -> None:
        """
        Stop the transcoder of a session.

        Unknown identifiers are ignored. A stop that arrives while the start
        is still in progress ends that stream as soon as it is spawned.

        Args:
            session_id: Session identifier
        """
        self.registry.discard_pending(session_id)
        if self.registry.is_starting(session_id):
            self.registry.stop_requested.add(session_id)

        ongoing = self.registry.remove_ongoing(session_id)
        if ongoing is None:
            logger.debug(
                f"No running stream for session {session_id}",
                extra={"camera_id": self.camera_id, "session_id": session_id}
            )
            return

        self._kill(ongoing)
        self._update_active_count()
        logger.info(
            f"Stream stopped for camera '{self.camera.name}'",
            extra={
                "event_type": "stream_stop",
                "camera_id": self.camera_id,
                "session_id": session_id,
                "duration_seconds": ongoing.duration_seconds,
            }
        )

    async def stop_all(self) -> None:
        """Kill every running transcoder of this camera."""
        for session_id in self.registry.ongoing_ids:
            await self.stop(session_id)
        logger.info(
            f"All streams cleaned up for camera '{self.camera.name}'",
            extra={"camera_id": self.camera_id}
        )
