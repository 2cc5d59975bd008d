"""
Camera snapshot fetching.

Snapshots are taken from the media server's MJPEG endpoint: the stream is
read until the first complete JPEG frame and the connection is dropped.

Cameras with a privacy shutter (SS001) open the shutter when a snapshot is
requested, so the alarm state is checked against the camera's shutter policy
first. While motion is active the shutter is already open and the check is
skipped.
"""
import io
import logging
from typing import AsyncIterator, Callable, Optional

import httpx
from PIL import Image, UnidentifiedImageError

from simplicam.config.camera import PRIVACY_SHUTTER_MODELS
from simplicam.core.config import settings
from simplicam.core.exceptions import PrivacyShutterClosedError, RateLimitError, SnapshotError
from simplicam.core.metrics import record_snapshot_request
from simplicam.core.retry import RETRY_SNAPSHOT, retry_async
from simplicam.schemas.camera import CameraDetails
from simplicam.services.address_resolver import AddressResolver, get_address_resolver
from simplicam.services.cloud_client import AlarmState, CloudClient, ensure_not_rate_limited

logger = logging.getLogger(__name__)

JPEG_SOI = b"\xff\xd8"
JPEG_EOI = b"\xff\xd9"

# Upper bound on bytes read while looking for one frame
MAX_FRAME_BYTES = 10 * 1024 * 1024


async def extract_first_jpeg(chunks: AsyncIterator[bytes]) -> bytes:
    """
    Return the first complete JPEG frame from an MJPEG byte stream.

    Args:
        chunks: Body chunks of the MJPEG response

    Returns:
        Bytes from the first start-of-image marker through the next
        end-of-image marker

    Raises:
        SnapshotError: If the stream ends (or grows too large) first
    """
    buffer = bytearray()
    start = -1
    async for chunk in chunks:
        buffer.extend(chunk)
        if start < 0:
            start = buffer.find(JPEG_SOI)
            if start < 0:
                # Keep a trailing 0xff in case the marker straddles chunks
                del buffer[:-1]
                continue
        end = buffer.find(JPEG_EOI, start + len(JPEG_SOI))
        if end >= 0:
            return bytes(buffer[start:end + len(JPEG_EOI)])
        if len(buffer) > MAX_FRAME_BYTES:
            break
    raise SnapshotError("Snapshot stream ended before a complete JPEG frame")


def verify_jpeg(image: bytes) -> None:
    """
    Check that the bytes decode as a JPEG image.

    Raises:
        SnapshotError: If Pillow cannot identify or verify the image
    """
    try:
        with Image.open(io.BytesIO(image)) as img:
            img.verify()
            image_format = img.format
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise SnapshotError(f"Snapshot is not a valid image: {e}") from e
    if image_format != "JPEG":
        raise SnapshotError(f"Snapshot is {image_format}, expected JPEG")


class SnapshotFetcher:
    """
    Fetches still images for one camera.

    Attributes:
        camera: Camera record (uuid, model, shutter policy)
        client: SimpliSafe cloud client (token, alarm state, rate limiting)
        is_motion_active: Returns True while a motion window is open
    """

    def __init__(
        self,
        camera: CameraDetails,
        client: CloudClient,
        is_motion_active: Callable[[], bool],
        resolver: Optional[AddressResolver] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.camera = camera
        self.client = client
        self.is_motion_active = is_motion_active
        self.resolver = resolver or get_address_resolver()
        self.timeout = timeout or settings.SNAPSHOT_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def camera_id(self) -> str:
        return self.camera.uuid

    async def _check_privacy_shutter(self) -> None:
        if self.camera.model not in PRIVACY_SHUTTER_MODELS or self.is_motion_active():
            return

        alarm_state = await self.client.get_alarm_state()
        state = alarm_state.value if isinstance(alarm_state, AlarmState) else str(alarm_state)
        camera_settings = self.camera.camera_settings
        shutter = {
            AlarmState.OFF.value: camera_settings.shutter_off,
            AlarmState.HOME.value: camera_settings.shutter_home,
            AlarmState.AWAY.value: camera_settings.shutter_away,
        }.get(state)

        if shutter is not None and shutter != "open":
            logger.debug(
                f"Camera snapshot request ignored, '{self.camera.name}' privacy shutter closed",
                extra={"camera_id": self.camera_id, "alarm_state": state, "shutter": shutter}
            )
            record_snapshot_request(self.camera_id, "privacy_blocked")
            raise PrivacyShutterClosedError(state)

    async def _download_frame(self, url: str) -> bytes:
        headers = {"Authorization": f"Bearer {self.client.access_token}"}
        # Certificate checks are off: the request goes to an IP just resolved for the media host
        async with httpx.AsyncClient(verify=False, timeout=self.timeout, transport=self._transport) as http:
            async with http.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                return await extract_first_jpeg(response.aiter_bytes())

    async def fetch(self, width: int, height: int) -> bytes:
        """
        Fetch a JPEG snapshot.

        Args:
            width: Requested image width
            height: Requested image height

        Returns:
            JPEG bytes

        Raises:
            RateLimitError: Client is currently blocked
            PrivacyShutterClosedError: Shutter policy forbids a snapshot now
            ResolutionError: Media host unresolvable and nothing cached
            SnapshotError: Download or decode failed
        """
        try:
            ensure_not_rate_limited(self.client, "Camera snapshot request")
        except RateLimitError:
            record_snapshot_request(self.camera_id, "rate_limited")
            raise

        logger.debug(
            f"Handling camera snapshot for '{self.camera.name}' at {width}x{height}",
            extra={"camera_id": self.camera_id, "width": width, "height": height}
        )

        await self._check_privacy_shutter()

        server_address = await self.resolver.resolve()
        url = f"https://{server_address}/v1/{self.camera.uuid}/mjpg?x={width}&fr=1"

        try:
            image = await retry_async(
                self._download_frame,
                url,
                config=RETRY_SNAPSHOT,
                operation_name="camera_snapshot",
            )
            verify_jpeg(image)
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(
                f"An error occurred while making snapshot request: {status_code}",
                extra={"event_type": "snapshot_failed", "camera_id": self.camera_id, "status_code": status_code}
            )
            record_snapshot_request(self.camera_id, "error")
            raise SnapshotError(f"Snapshot request failed with HTTP {status_code}", status_code=status_code) from e
        except httpx.HTTPError as e:
            logger.error(
                f"An error occurred while making snapshot request: {e}",
                extra={"event_type": "snapshot_failed", "camera_id": self.camera_id, "error": str(e)}
            )
            record_snapshot_request(self.camera_id, "error")
            raise SnapshotError(f"Snapshot request failed: {e}") from e
        except SnapshotError as e:
            logger.error(
                f"An error occurred while making snapshot request: {e}",
                extra={"event_type": "snapshot_failed", "camera_id": self.camera_id, "error": str(e)}
            )
            record_snapshot_request(self.camera_id, "error")
            raise

        record_snapshot_request(self.camera_id, "success")
        logger.debug(
            f"Closed '{self.camera.name}' snapshot request with {round(len(image) / 1000)}kB image",
            extra={"camera_id": self.camera_id, "size": len(image)}
        )
        return image
