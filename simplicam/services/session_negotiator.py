"""
Stream session negotiation.

Answers a HomeKit SetupEndpoints request: picks an SSRC per media type,
echoes the viewer's SRTP keying material, reports the local stream address
and records a PendingSession for the following start request.
"""
import ipaddress
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from pyhap.util import get_local_address

from simplicam.core.config import settings
from simplicam.services.stream_sessions import MediaEndpoint, PendingSession, SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class MediaSetup:
    """Viewer endpoint for one media type, as sent in SetupEndpoints."""
    port: int
    srtp_key: bytes
    srtp_salt: bytes


@dataclass
class PrepareStreamRequest:
    session_id: str
    target_address: str
    video: Optional[MediaSetup] = None
    audio: Optional[MediaSetup] = None


@dataclass
class MediaSetupResponse:
    port: int
    ssrc: int
    srtp_key: bytes
    srtp_salt: bytes


@dataclass
class PrepareStreamResponse:
    """
    Local side of the negotiated session.

    Attributes:
        address: Address the transcoder streams from
        address_type: "v4" or "v6"
        video: Video answer, None when video was not requested
        audio: Audio answer, None when audio was not requested
    """
    address: str
    address_type: str
    video: Optional[MediaSetupResponse] = None
    audio: Optional[MediaSetupResponse] = None


def generate_ssrc() -> int:
    """
    Random 32-bit SSRC with the top byte cleared.

    Keeping the top byte zero keeps the value positive when a peer reads it
    as a signed 32-bit integer.
    """
    source = bytearray(secrets.token_bytes(4))
    source[0] = 0
    return int.from_bytes(bytes(source), byteorder="big", signed=False)


def address_type(address: str) -> str:
    """'v4' or 'v6' for a literal IP address."""
    return "v6" if ipaddress.ip_address(address).version == 6 else "v4"


class SessionNegotiator:
    """Handles prepare requests for one camera."""

    def __init__(self, camera_id: str, registry: SessionRegistry, stream_address: Optional[str] = None):
        self.camera_id = camera_id
        self.registry = registry
        self._stream_address = stream_address

    @property
    def stream_address(self) -> str:
        """Configured stream address, or the primary outbound interface address."""
        return self._stream_address or settings.STREAM_ADDRESS or get_local_address()

    def _answer(self, setup: MediaSetup):
        ssrc = generate_ssrc()
        response = MediaSetupResponse(
            port=setup.port,
            ssrc=ssrc,
            srtp_key=setup.srtp_key,
            srtp_salt=setup.srtp_salt,
        )
        endpoint = MediaEndpoint(
            port=setup.port,
            ssrc=ssrc,
            srtp_key=setup.srtp_key + setup.srtp_salt,
        )
        return response, endpoint

    def prepare(self, request: PrepareStreamRequest) -> PrepareStreamResponse:
        """
        Negotiate endpoints and store the pending session.

        A new prepare for an identifier replaces the previous pending entry.

        Args:
            request: Viewer address and per-media endpoints

        Returns:
            PrepareStreamResponse with local address and per-media SSRCs
        """
        local_address = self.stream_address
        pending = PendingSession(session_id=request.session_id, address=request.target_address)
        response = PrepareStreamResponse(address=local_address, address_type=address_type(local_address))

        if request.video:
            response.video, pending.video = self._answer(request.video)
        if request.audio:
            response.audio, pending.audio = self._answer(request.audio)

        self.registry.put_pending(pending)

        logger.debug(
            f"Prepared stream session {request.session_id} for {request.target_address}",
            extra={
                "event_type": "stream_prepared",
                "camera_id": self.camera_id,
                "session_id": request.session_id,
                "client_address": request.target_address,
                "video_port": request.video.port if request.video else None,
                "audio_port": request.audio.port if request.audio else None,
                "local_address": local_address,
            }
        )
        return response
