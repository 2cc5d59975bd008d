"""Pytest fixtures and configuration for the test suite

This module provides:
1. Factory functions for camera records and cloud clients with sensible defaults
2. Pytest fixtures that use the factory functions
3. A fake ffmpeg process for supervisor tests

Factory Functions:
    - make_camera_details(**overrides) -> CameraDetails
    - make_cloud_client(**overrides) -> Mock
    - make_pending_session(**overrides) -> PendingSession
"""
import asyncio
import io
from typing import List, Optional
from unittest.mock import AsyncMock, Mock

import pytest
from PIL import Image

from simplicam.config.camera import CameraOptions
from simplicam.schemas.camera import CameraDetails
from simplicam.services.address_resolver import AddressResolver
from simplicam.services.cloud_client import AlarmState
from simplicam.services.stream_sessions import MediaEndpoint, PendingSession


# =============================================================================
# Factory Functions for Test Objects
# =============================================================================

def make_camera_details(
    uuid: str = "cam-001",
    model: str = "SS001",
    camera_name: str = "Living Room",
    picture_quality: str = "720p",
    fps: int = 20,
    bit_rate: int = 284,
    shutter_off: str = "open",
    shutter_home: str = "open",
    shutter_away: str = "open",
    firmware_version: str = "2.6.1.107",
) -> CameraDetails:
    """
    Factory function to create CameraDetails as the cloud client returns them.

    Args mirror the camelCase payload fields.
    """
    return CameraDetails.model_validate({
        "uuid": uuid,
        "model": model,
        "cameraSettings": {
            "cameraName": camera_name,
            "pictureQuality": picture_quality,
            "shutterOff": shutter_off,
            "shutterHome": shutter_home,
            "shutterAway": shutter_away,
            "admin": {
                "fps": fps,
                "bitRate": bit_rate,
                "firmwareVersion": firmware_version,
            },
        },
    })


def make_cloud_client(
    access_token: str = "test-token",
    is_blocked: bool = False,
    next_attempt: float = 0.0,
    alarm_state: AlarmState = AlarmState.OFF,
    cameras: Optional[List[dict]] = None,
) -> Mock:
    """Factory function to create a mock SimpliSafe cloud client."""
    client = Mock()
    client.access_token = access_token
    client.is_blocked = is_blocked
    client.next_attempt = next_attempt
    client.get_alarm_state = AsyncMock(return_value=alarm_state)
    client.get_cameras = AsyncMock(return_value=cameras if cameras is not None else [])
    client.subscribe_to_events = AsyncMock(return_value=None)
    client.is_socket_connected = Mock(return_value=False)
    return client


def make_pending_session(
    session_id: str = "session-1",
    address: str = "192.168.1.50",
    with_video: bool = True,
    with_audio: bool = True,
) -> PendingSession:
    """Factory function to create a negotiated PendingSession."""
    return PendingSession(
        session_id=session_id,
        address=address,
        video=MediaEndpoint(port=50000, ssrc=1234567, srtp_key=b"k" * 16 + b"s" * 14) if with_video else None,
        audio=MediaEndpoint(port=50002, ssrc=7654321, srtp_key=b"K" * 16 + b"S" * 14) if with_audio else None,
    )


def make_jpeg(width: int = 8, height: int = 8) -> bytes:
    """Encode a small solid-color JPEG with Pillow."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 30, 30)).save(buffer, format="JPEG")
    return buffer.getvalue()


class FakeStderr:
    """Stands in for a subprocess stderr StreamReader; each read() returns one chunk."""

    def __init__(self, chunks: List[bytes], hold_open: bool = False):
        self._chunks = list(chunks)
        self._hold_open = hold_open
        self._closed = asyncio.Event()

    def close(self):
        self._closed.set()

    async def read(self, n: int = -1) -> bytes:
        if self._chunks:
            await asyncio.sleep(0)
            return self._chunks.pop(0)
        if self._hold_open:
            await self._closed.wait()
        return b""


class FakeProcess:
    """
    Stand-in for asyncio.subprocess.Process.

    Emits the given stderr lines, then exits with returncode. With
    hold_open, stderr stays open (a live stream) until kill() is called,
    which ends the process with -9.
    """

    def __init__(self, stderr_lines: List[bytes], returncode: Optional[int] = 0, hold_open: bool = False, pid: int = 4242):
        self.pid = pid
        self.stderr = FakeStderr(stderr_lines, hold_open=hold_open)
        self._returncode = returncode
        self.returncode = None
        self.kill = Mock(side_effect=self._kill)

    def _kill(self):
        self._returncode = -9
        self.stderr.close()

    async def wait(self) -> Optional[int]:
        self.returncode = self._returncode
        return self.returncode


# =============================================================================
# Pytest Fixtures
# =============================================================================

@pytest.fixture
def camera_details() -> CameraDetails:
    """Indoor camera (privacy shutter model)."""
    return make_camera_details()


@pytest.fixture
def doorbell_details() -> CameraDetails:
    """Video doorbell (no shutter)."""
    return make_camera_details(uuid="doorbell-001", model="SS002", camera_name="Front Door")


@pytest.fixture
def cloud_client() -> Mock:
    return make_cloud_client()


@pytest.fixture
def camera_options() -> CameraOptions:
    return CameraOptions()


@pytest.fixture
def resolver() -> AddressResolver:
    """Resolver that always answers with a fixed media server address."""
    resolver = AddressResolver("media.simplisafe.com")
    resolver.resolve = AsyncMock(return_value="52.1.2.3")
    resolver.cached_address = "52.1.2.3"
    return resolver


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_jpeg()
