"""
Streaming session state for one camera.

A HomeKit viewer first negotiates endpoints (creating a PendingSession) and
then starts the stream (turning it into an OngoingSession with a running
transcoder). Both are keyed by the string form of the HAP session UUID.
"""
import asyncio
import base64
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set


class StreamState(str, Enum):
    """Lifecycle of a streaming session identifier."""
    NONE = "none"
    PENDING = "pending"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class MediaEndpoint:
    """
    Target of one media type (video or audio) in a negotiated session.

    Attributes:
        port: Viewer's RTP port
        ssrc: Sender SSRC chosen for this session
        srtp_key: Master key followed by master salt
    """
    port: int
    ssrc: int
    srtp_key: bytes

    @property
    def srtp_params(self) -> str:
        """Key material as base64, the form ffmpeg's -srtp_out_params expects."""
        return base64.b64encode(self.srtp_key).decode("ascii")


@dataclass
class PendingSession:
    """Endpoints negotiated by prepare, waiting for a start request."""
    session_id: str
    address: str
    video: Optional[MediaEndpoint] = None
    audio: Optional[MediaEndpoint] = None


@dataclass
class OngoingSession:
    """A running transcoder bound to a session identifier."""
    session_id: str
    process: asyncio.subprocess.Process
    monitor_task: Optional[asyncio.Task] = None
    started_at: float = field(default_factory=time.time)
    state: StreamState = StreamState.STARTING

    @property
    def duration_seconds(self) -> float:
        return round(time.time() - self.started_at, 2)


class SessionRegistry:
    """
    Pending and ongoing sessions of one camera.

    An identifier is in at most one of the two maps. Identifiers whose start
    is still in progress are tracked separately so a stop arriving meanwhile
    is not lost.
    """

    def __init__(self):
        self.pending: Dict[str, PendingSession] = {}
        self.ongoing: Dict[str, OngoingSession] = {}
        self.starting: Dict[str, int] = {}
        self.stop_requested: Set[str] = set()

    def put_pending(self, session: PendingSession) -> None:
        """Store a negotiated session, replacing any earlier one for the identifier."""
        self.pending[session.session_id] = session

    def pop_pending(self, session_id: str) -> Optional[PendingSession]:
        return self.pending.pop(session_id, None)

    def discard_pending(self, session_id: str) -> None:
        self.pending.pop(session_id, None)

    def register_ongoing(self, session: OngoingSession) -> None:
        self.pending.pop(session.session_id, None)
        self.ongoing[session.session_id] = session

    def get_ongoing(self, session_id: str) -> Optional[OngoingSession]:
        return self.ongoing.get(session_id)

    def remove_ongoing(self, session_id: str) -> Optional[OngoingSession]:
        return self.ongoing.pop(session_id, None)

    def begin_start(self, session_id: str) -> None:
        self.starting[session_id] = self.starting.get(session_id, 0) + 1

    def end_start(self, session_id: str) -> None:
        """
        Finish one start of an identifier.

        A pending stop request is kept until the last overlapping start for
        the identifier has finished.
        """
        remaining = self.starting.get(session_id, 0) - 1
        if remaining > 0:
            self.starting[session_id] = remaining
            return
        self.starting.pop(session_id, None)
        self.stop_requested.discard(session_id)

    def is_starting(self, session_id: str) -> bool:
        return session_id in self.starting

    def state_of(self, session_id: str) -> StreamState:
        """Current lifecycle state of an identifier."""
        if session_id in self.ongoing:
            return self.ongoing[session_id].state
        if session_id in self.starting:
            return StreamState.STARTING
        if session_id in self.pending:
            return StreamState.PENDING
        return StreamState.NONE

    @property
    def pending_ids(self) -> List[str]:
        return list(self.pending)

    @property
    def ongoing_ids(self) -> List[str]:
        return list(self.ongoing)


class StreamRequestType(str, Enum):
    START = "start"
    STOP = "stop"


@dataclass
class VideoRequest:
    """Video parameters selected by the viewer. Zero or None means unspecified."""
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None
    max_bit_rate: Optional[int] = None
    mtu: Optional[int] = None


@dataclass
class AudioRequest:
    """Audio parameters selected by the viewer."""
    codec: str = "AAC-eld"
    sample_rate: Optional[int] = None
    max_bit_rate: Optional[int] = None


@dataclass
class StreamRequest:
    session_id: str
    type: StreamRequestType
    video: VideoRequest = field(default_factory=VideoRequest)
    audio: Optional[AudioRequest] = None
