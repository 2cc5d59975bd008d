"""
Error taxonomy for camera streaming, snapshots and event subscriptions.

User-facing operations raise one of these; background tasks (reconnects,
process monitors) log them instead.
"""
from typing import Optional


class SimpliCamError(Exception):
    """Base class for all camera accessory errors."""


class RateLimitError(SimpliCamError):
    """Upstream API is throttling requests."""


class ResolutionError(SimpliCamError):
    """Media host could not be resolved and no cached address exists."""

    def __init__(self, hostname: str, message: Optional[str] = None):
        self.hostname = hostname
        super().__init__(message or f"Could not resolve hostname for {hostname}")


class PrivacyShutterClosedError(SimpliCamError):
    """Snapshot refused because the camera's privacy shutter is closed."""

    def __init__(self, alarm_state: str):
        self.alarm_state = alarm_state
        super().__init__(f"Privacy shutter closed (alarm state {alarm_state})")


class SnapshotError(SimpliCamError):
    """Snapshot download or JPEG decode failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class StreamStartError(SimpliCamError):
    """The transcoder never reached the streaming state."""


class StreamSpawnError(StreamStartError):
    """The transcoder process could not be spawned."""


class StreamExitError(StreamStartError):
    """The transcoder exited abnormally before producing output."""

    def __init__(self, exit_code: int):
        self.exit_code = exit_code
        super().__init__(f"Error: FFmpeg exited with code {exit_code}")


class StreamRuntimeError(SimpliCamError):
    """The transcoder exited abnormally while streaming."""

    def __init__(self, exit_code: int):
        self.exit_code = exit_code
        super().__init__(f"FFmpeg exited with code {exit_code} while streaming")


class TerminationError(SimpliCamError):
    """Signal delivery to a running transcoder failed."""
