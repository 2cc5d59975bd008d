"""
HomeKit camera accessory for SimpliSafe cameras.

SimpliCamAccessory is the framework-independent surface of one camera:
stream negotiation, stream start/stop, snapshots, motion and doorbell state,
reachability and the real-time event subscription.

HomeKitCameraAccessory binds that surface to a HAP-python Camera:

    Controller writes SetupEndpoints -> prepare_stream (SessionNegotiator)
            |
    Controller selects a stream configuration -> start_stream / stop_stream
            |
    handle_stream_request -> StreamSupervisor (ffmpeg FLV -> SRTP)

    Snapshot request -> async_get_snapshot -> SnapshotFetcher
    Event socket -> EventSubscriptionManager -> MotionDetected / ProgrammableSwitchEvent
"""
import asyncio
import base64
import logging
import struct
import subprocess
from functools import partial
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID

from pyhap import tlv
from pyhap.camera import (
    AUDIO_CODEC_TYPES,
    SETUP_ADDR_INFO,
    SETUP_SRTP_PARAM,
    SETUP_STATUS,
    SETUP_TYPES,
    SRTP_CRYPTO_SUITES,
    VIDEO_CODEC_PARAM_LEVEL_TYPES,
    VIDEO_CODEC_PARAM_PROFILE_ID_TYPES,
    Camera,
)

from simplicam import __version__
from simplicam.config.camera import DOORBELL_MODELS, CameraOptions, load_camera_options
from simplicam.core.config import settings
from simplicam.core.exceptions import RateLimitError, SimpliCamError
from simplicam.core.logging_config import clear_session_id, set_session_id
from simplicam.core.metrics import record_stream_start, set_app_info
from simplicam.schemas.camera import CameraDetails, StreamDiagnostics
from simplicam.services.address_resolver import AddressResolver, get_address_resolver
from simplicam.services.cloud_client import CloudClient, ensure_not_rate_limited
from simplicam.services.event_subscription import EventSubscriptionManager
from simplicam.services.session_negotiator import (
    MediaSetup,
    PrepareStreamRequest,
    PrepareStreamResponse,
    SessionNegotiator,
)
from simplicam.services.snapshot_fetcher import SnapshotFetcher
from simplicam.services.stream_sessions import (
    AudioRequest,
    SessionRegistry,
    StreamRequest,
    StreamRequestType,
    StreamState,
    VideoRequest,
)
from simplicam.services.stream_supervisor import StreamSupervisor

logger = logging.getLogger(__name__)

MANUFACTURER = "SimpliSafe"

# Resolutions offered to HomeKit, before filtering by the camera's pictureQuality.
# None is replaced by the camera's own frame rate.
STREAM_RESOLUTIONS = [
    [320, 240, None],
    [320, 240, 15],
    [320, 180, None],
    [320, 180, 15],
    [480, 360, None],
    [480, 270, None],
    [640, 480, None],
    [640, 360, None],
    [1280, 720, None],
    [1920, 1080, None],
]

SUPPORTED_PROFILES = [
    VIDEO_CODEC_PARAM_PROFILE_ID_TYPES["BASELINE"],
    VIDEO_CODEC_PARAM_PROFILE_ID_TYPES["MAIN"],
    VIDEO_CODEC_PARAM_PROFILE_ID_TYPES["HIGH"],
]
SUPPORTED_LEVELS = [
    VIDEO_CODEC_PARAM_LEVEL_TYPES["TYPE3_1"],
    VIDEO_CODEC_PARAM_LEVEL_TYPES["TYPE3_2"],
    VIDEO_CODEC_PARAM_LEVEL_TYPES["TYPE4_0"],
]


def get_streaming_options(camera: CameraDetails, address: str, stream_count: Optional[int] = None) -> dict:
    """
    HAP-python Camera options for a SimpliSafe camera.

    Resolutions above the camera's pictureQuality height are dropped.

    Args:
        camera: Camera record (fps ceiling, pictureQuality)
        address: Local address streams are sent from
        stream_count: Concurrent streams (default settings.CAMERA_STREAM_COUNT)

    Returns:
        Options dict for pyhap.camera.Camera
    """
    fps = camera.camera_settings.admin.fps
    max_height = camera.camera_settings.max_supported_height
    resolutions = [
        [width, height, rate if rate is not None else fps]
        for width, height, rate in STREAM_RESOLUTIONS
        if height <= max_height
    ]
    return {
        "video": {
            "codec": {
                "profiles": SUPPORTED_PROFILES,
                "levels": SUPPORTED_LEVELS,
            },
            "resolutions": resolutions,
        },
        "audio": {
            "codecs": [
                {"type": "AAC-eld", "samplerate": 16},
            ],
        },
        "srtp": True,
        "address": address,
        "stream_count": stream_count or settings.CAMERA_STREAM_COUNT,
    }


def _decode_mtu(value: Any) -> Optional[int]:
    """MTU from a selected stream configuration (little-endian TLV bytes)."""
    if isinstance(value, (bytes, bytearray)):
        return struct.unpack("<H", value)[0] if len(value) == 2 else None
    return value


class SimpliCamAccessory:
    """
    One SimpliSafe camera as a HomeKit camera.

    Every public operation completes once, with a value or one of the
    SimpliCamError subclasses.

    Attributes:
        camera: Camera record from the cloud client
        client: SimpliSafe cloud client
        options: Per-camera options
        reachable: Whether the camera was online at the last check
    """

    def __init__(
        self,
        camera: CameraDetails,
        client: CloudClient,
        options: Optional[Union[Dict[str, Any], CameraOptions]] = None,
        resolver: Optional[AddressResolver] = None,
        auto_listen: bool = True,
    ):
        self.camera = camera
        self.client = client
        self.options = load_camera_options(options)
        self.resolver = resolver or get_address_resolver()
        self.reachable = True

        self._motion_detected = False
        self._doorbell_state = 0
        self._listen_task: Optional[asyncio.Task] = None

        self.registry = SessionRegistry()
        self.negotiator = SessionNegotiator(camera.uuid, self.registry)
        self.supervisor = StreamSupervisor(
            camera=camera,
            options=self.options,
            registry=self.registry,
            client=client,
            resolver=self.resolver,
            on_runtime_failure=self.force_stop_session,
        )
        self.events = EventSubscriptionManager(
            camera_id=camera.uuid,
            camera_name=camera.name,
            client=client,
            set_motion_detected=self.set_motion_detected,
            trigger_doorbell=self.trigger_doorbell,
        )
        self.snapshots = SnapshotFetcher(
            camera=camera,
            client=client,
            is_motion_active=lambda: self.events.motion_active,
            resolver=self.resolver,
        )

        if auto_listen:
            self._schedule_listening()

    @property
    def camera_id(self) -> str:
        return self.camera.uuid

    @property
    def name(self) -> str:
        return self.camera.name

    def _schedule_listening(self) -> None:
        try:
            loop = asyncio.get_running_loop()
            self._listen_task = loop.create_task(
                self.start_listening(),
                name=f"camera_events_{self.camera_id}"
            )
        except RuntimeError:
            logger.debug(
                f"No running event loop, {self.name} will listen for events once started",
                extra={"camera_id": self.camera_id}
            )

    def identify(self) -> None:
        logger.info(f"Identify request for {self.name}", extra={"camera_id": self.camera_id})

    def prepare_stream(self, request: PrepareStreamRequest) -> PrepareStreamResponse:
        """Negotiate endpoints for a new stream session."""
        return self.negotiator.prepare(request)

    async def handle_stream_request(self, request: StreamRequest) -> StreamState:
        """
        Start or stop a stream session.

        Args:
            request: Start request with selected parameters, or a stop request

        Returns:
            Resulting StreamState of the session

        Raises:
            RateLimitError: Start requested while the client is blocked
            ResolutionError, StreamSpawnError, StreamExitError: Start failed
        """
        token = set_session_id(request.session_id)
        try:
            if request.type == StreamRequestType.START:
                try:
                    ensure_not_rate_limited(self.client, "Camera stream request")
                except RateLimitError as e:
                    self.registry.discard_pending(request.session_id)
                    record_stream_start(self.camera_id, "rate_limited")
                    logger.error(
                        str(e),
                        extra={"event_type": "stream_rejected", "camera_id": self.camera_id, "reason": "rate_limited"}
                    )
                    raise
                return await self.supervisor.start(request.session_id, request)

            await self.supervisor.stop(request.session_id)
            return StreamState.STOPPED
        finally:
            clear_session_id(token)

    async def handle_snapshot_request(self, width: int, height: int) -> bytes:
        """Fetch a JPEG snapshot at the requested size."""
        return await self.snapshots.fetch(width, height)

    def get_motion_state(self) -> bool:
        """
        Current MotionDetected value.

        Raises:
            RateLimitError: Client is blocked
        """
        ensure_not_rate_limited(self.client, "Request")
        return self._motion_detected

    def get_doorbell_state(self) -> int:
        """
        Current ProgrammableSwitchEvent value.

        Raises:
            RateLimitError: Client is blocked
        """
        ensure_not_rate_limited(self.client, "Request")
        return self._doorbell_state

    def set_motion_detected(self, detected: bool) -> None:
        self._motion_detected = detected

    def trigger_doorbell(self) -> None:
        # Single press
        self._doorbell_state = 0
        logger.info(
            f"Doorbell pressed on {self.name}",
            extra={"event_type": "doorbell_ring", "camera_id": self.camera_id}
        )

    def force_stop_session(self, session_id: str) -> None:
        """Tear down a HomeKit session whose transcoder died while streaming."""
        logger.warning(
            f"Force stopping stream session {session_id} for {self.name}",
            extra={"event_type": "stream_force_stop", "camera_id": self.camera_id, "session_id": session_id}
        )

    async def update_reachability(self) -> bool:
        """
        Refresh reachability from the account's camera list.

        Returns:
            True when the camera is listed with status 'online'; the previous
            value when the camera list could not be fetched
        """
        try:
            cameras = await self.client.get_cameras()
        except Exception as e:
            logger.error(
                f"An error occurred while updating reachability for {self.name}: {e}",
                extra={"event_type": "reachability_error", "camera_id": self.camera_id, "error": str(e)}
            )
            return self.reachable

        camera = next((cam for cam in cameras if cam.get("uuid") == self.camera_id), None)
        self.reachable = camera is not None and camera.get("status") == "online"
        return self.reachable

    async def start_listening(self) -> None:
        await self.events.start()

    async def shutdown(self) -> None:
        """Stop listening for events and kill every running stream."""
        await self.events.close()
        await self.supervisor.stop_all()

    def get_stream_diagnostics(self) -> StreamDiagnostics:
        """Streaming and event socket diagnostics for this camera."""
        return StreamDiagnostics(
            camera_id=self.camera_id,
            camera_name=self.name,
            reachable=self.reachable,
            pending_sessions=self.registry.pending_ids,
            active_sessions=self.registry.ongoing_ids,
            subscription_state=self.events.state.value,
            socket_failures=self.events.failure_count,
            motion_active=self.events.motion_active,
            media_address=self.resolver.cached_address,
        )


class HomeKitCameraAccessory(SimpliCamAccessory):
    """
    SimpliSafe camera bound to a HAP-python Camera accessory.

    Adds AccessoryInformation, a MotionSensor service and, for doorbell
    models, a Doorbell service.
    """

    def __init__(
        self,
        driver,
        camera: CameraDetails,
        client: CloudClient,
        options: Optional[Union[Dict[str, Any], CameraOptions]] = None,
        resolver: Optional[AddressResolver] = None,
    ):
        super().__init__(camera, client, options=options, resolver=resolver, auto_listen=False)
        self._driver = driver

        streaming_options = get_streaming_options(camera, self.negotiator.stream_address)
        self._camera = Camera(streaming_options, driver, camera.name)

        accessory_info = self._camera.get_service("AccessoryInformation")
        if accessory_info:
            accessory_info.configure_char("Manufacturer", value=MANUFACTURER)
            accessory_info.configure_char("Model", value=camera.model)
            accessory_info.configure_char("SerialNumber", value=camera.uuid)
            accessory_info.configure_char(
                "FirmwareRevision", value=camera.camera_settings.admin.firmware_version
            )
            accessory_info.configure_char("Identify", setter_callback=lambda _value: self.identify())

        motion_sensor = self._camera.add_preload_service("MotionSensor")
        self._motion_char = motion_sensor.configure_char(
            "MotionDetected", value=False, getter_callback=self.get_motion_state
        )

        self._doorbell_char = None
        if camera.model in DOORBELL_MODELS:
            doorbell = self._camera.add_preload_service("Doorbell")
            self._doorbell_char = doorbell.configure_char(
                "ProgrammableSwitchEvent", getter_callback=self.get_doorbell_state
            )

        for stream_idx, management in enumerate(self._management_services()):
            management.configure_char(
                "SetupEndpoints", setter_callback=partial(self._set_endpoints, stream_idx=stream_idx)
            )

        self._camera.start_stream = self._start_stream
        self._camera.stop_stream = self._stop_stream
        self._camera.async_get_snapshot = self._get_snapshot

        logger.info(
            f"Created HomeKit camera accessory: {camera.name} ({camera.uuid})",
            extra={"event_type": "camera_accessory_created", "camera_id": camera.uuid, "model": camera.model}
        )

        self._schedule_listening()

    @property
    def accessory(self) -> Any:
        """Get the underlying HAP-python Camera accessory."""
        return self._camera

    def _management_services(self) -> List[Any]:
        return [
            service for service in self._camera.services
            if getattr(service, "display_name", None) == "CameraRTPStreamManagement"
        ]

    def set_motion_detected(self, detected: bool) -> None:
        super().set_motion_detected(detected)
        self._motion_char.set_value(detected)

    def trigger_doorbell(self) -> None:
        super().trigger_doorbell()
        if self._doorbell_char is not None:
            self._doorbell_char.set_value(0)

    def force_stop_session(self, session_id: str) -> None:
        super().force_stop_session(session_id)
        for key, session_info in list(self._camera.sessions.items()):
            if str(session_info.get("id", key)) != session_id:
                continue
            self._camera.sessions.pop(key, None)
            # Resets StreamingStatus and notifies the controller
            self._camera.set_streaming_available(session_info.get("stream_idx", 0))

    def _set_endpoints(self, value: str, stream_idx: int = 0) -> None:
        """SetupEndpoints write: decode the TLV, negotiate and publish the answer."""
        objs = tlv.decode(value, from_base64=True)
        session_uuid = UUID(bytes=objs[SETUP_TYPES["SESSION_ID"]])

        address_tlv = tlv.decode(objs[SETUP_TYPES["ADDRESS"]])
        target_address = address_tlv[SETUP_ADDR_INFO["ADDRESS"]].decode("utf8")
        video_port = struct.unpack("<H", address_tlv[SETUP_ADDR_INFO["VIDEO_RTP_PORT"]])[0]
        audio_port = struct.unpack("<H", address_tlv[SETUP_ADDR_INFO["AUDIO_RTP_PORT"]])[0]

        video_srtp = tlv.decode(objs[SETUP_TYPES["VIDEO_SRTP_PARAM"]])
        audio_srtp = tlv.decode(objs[SETUP_TYPES["AUDIO_SRTP_PARAM"]])

        request = PrepareStreamRequest(
            session_id=str(session_uuid),
            target_address=target_address,
            video=MediaSetup(
                port=video_port,
                srtp_key=video_srtp[SETUP_SRTP_PARAM["MASTER_KEY"]],
                srtp_salt=video_srtp[SETUP_SRTP_PARAM["MASTER_SALT"]],
            ),
            audio=MediaSetup(
                port=audio_port,
                srtp_key=audio_srtp[SETUP_SRTP_PARAM["MASTER_KEY"]],
                srtp_salt=audio_srtp[SETUP_SRTP_PARAM["MASTER_SALT"]],
            ),
        )
        response = self.prepare_stream(request)

        res_address_tlv = tlv.encode(
            SETUP_ADDR_INFO["ADDRESS_VER"], b"\x01" if response.address_type == "v6" else b"\x00",
            SETUP_ADDR_INFO["ADDRESS"], response.address.encode("utf-8"),
            SETUP_ADDR_INFO["VIDEO_RTP_PORT"], struct.pack("<H", video_port),
            SETUP_ADDR_INFO["AUDIO_RTP_PORT"], struct.pack("<H", audio_port),
        )
        video_srtp_tlv = tlv.encode(
            SETUP_SRTP_PARAM["CRYPTO"], SRTP_CRYPTO_SUITES["AES_CM_128_HMAC_SHA1_80"],
            SETUP_SRTP_PARAM["MASTER_KEY"], response.video.srtp_key,
            SETUP_SRTP_PARAM["MASTER_SALT"], response.video.srtp_salt,
        )
        audio_srtp_tlv = tlv.encode(
            SETUP_SRTP_PARAM["CRYPTO"], SRTP_CRYPTO_SUITES["AES_CM_128_HMAC_SHA1_80"],
            SETUP_SRTP_PARAM["MASTER_KEY"], response.audio.srtp_key,
            SETUP_SRTP_PARAM["MASTER_SALT"], response.audio.srtp_salt,
        )
        response_tlv = tlv.encode(
            SETUP_TYPES["SESSION_ID"], session_uuid.bytes,
            SETUP_TYPES["STATUS"], SETUP_STATUS["SUCCESS"],
            SETUP_TYPES["ADDRESS"], res_address_tlv,
            SETUP_TYPES["VIDEO_SRTP_PARAM"], video_srtp_tlv,
            SETUP_TYPES["AUDIO_SRTP_PARAM"], audio_srtp_tlv,
            SETUP_TYPES["VIDEO_SSRC"], struct.pack("<I", response.video.ssrc),
            SETUP_TYPES["AUDIO_SSRC"], struct.pack("<I", response.audio.ssrc),
            to_base64=True,
        )

        self._camera.sessions[session_uuid] = {
            "id": session_uuid,
            "stream_idx": stream_idx,
            "address": target_address,
            "v_port": video_port,
            "v_srtp_key": base64.b64encode(request.video.srtp_key + request.video.srtp_salt).decode("ascii"),
            "v_ssrc": response.video.ssrc,
            "a_port": audio_port,
            "a_srtp_key": base64.b64encode(request.audio.srtp_key + request.audio.srtp_salt).decode("ascii"),
            "a_ssrc": response.audio.ssrc,
        }

        services = self._management_services()
        management = services[stream_idx] if stream_idx < len(services) else services[0]
        management.get_characteristic("SetupEndpoints").set_value(response_tlv)

    async def _start_stream(self, session_info: dict, stream_config: dict) -> bool:
        """HAP-python start hook. Returns True once ffmpeg is streaming."""
        request = StreamRequest(
            session_id=str(session_info["id"]),
            type=StreamRequestType.START,
            video=VideoRequest(
                width=stream_config.get("width"),
                height=stream_config.get("height"),
                fps=stream_config.get("fps"),
                max_bit_rate=stream_config.get("v_max_bitrate"),
                mtu=_decode_mtu(stream_config.get("v_max_mtu")),
            ),
            audio=AudioRequest(
                codec="OPUS" if stream_config.get("a_codec") == AUDIO_CODEC_TYPES["OPUS"] else "AAC-eld",
                sample_rate=stream_config.get("a_sample_rate"),
                max_bit_rate=stream_config.get("a_max_bitrate"),
            ),
        )
        try:
            state = await self.handle_stream_request(request)
        except SimpliCamError as e:
            logger.error(
                f"Failed to start HomeKit stream for {self.name}: {e}",
                extra={
                    "event_type": "stream_start_failed",
                    "camera_id": self.camera_id,
                    "session_id": request.session_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return False
        return state == StreamState.STREAMING

    async def _stop_stream(self, session_info: dict) -> None:
        """HAP-python stop hook."""
        await self.handle_stream_request(
            StreamRequest(session_id=str(session_info["id"]), type=StreamRequestType.STOP)
        )

    async def _get_snapshot(self, image_size: dict) -> bytes:
        """HAP-python snapshot hook. Errors propagate so HAP reports a failure."""
        width = image_size.get("image-width", 640)
        height = image_size.get("image-height", 480)
        return await self.handle_snapshot_request(width, height)


def create_camera_accessory(
    driver,
    camera: Union[CameraDetails, Dict[str, Any]],
    client: CloudClient,
    options: Optional[Union[Dict[str, Any], CameraOptions]] = None,
) -> Optional[HomeKitCameraAccessory]:
    """
    Factory function to create a HomeKit camera accessory.

    Args:
        driver: HAP-python AccessoryDriver instance
        camera: Camera record, as a schema or the raw cloud client dict
        client: SimpliSafe cloud client
        options: Per-camera options (camelCase or snake_case keys)

    Returns:
        HomeKitCameraAccessory instance or None if it could not be created
    """
    set_app_info(__version__)
    try:
        details = camera if isinstance(camera, CameraDetails) else CameraDetails.model_validate(camera)
        accessory = HomeKitCameraAccessory(
            driver=driver,
            camera=details,
            client=client,
            options=options,
        )
    except Exception as e:
        camera_name = camera.name if isinstance(camera, CameraDetails) else camera.get("uuid", "unknown")
        logger.error(
            f"Failed to create camera accessory for {camera_name}: {e}",
            extra={"event_type": "camera_accessory_error", "error": str(e)}
        )
        return None

    # Streams fail at start time without a usable binary; say so up front
    available, message = check_ffmpeg_available(accessory.supervisor.ffmpeg_path)
    if available:
        logger.debug(message, extra={"camera_id": accessory.camera_id})
    else:
        logger.warning(
            f"Streaming will fail for {accessory.name}: {message}",
            extra={
                "event_type": "ffmpeg_unavailable",
                "camera_id": accessory.camera_id,
                "ffmpeg_path": accessory.supervisor.ffmpeg_path,
            }
        )
    return accessory


def check_ffmpeg_available(ffmpeg_path: Optional[str] = None) -> Tuple[bool, str]:
    """
    Check if ffmpeg is available.

    Args:
        ffmpeg_path: Binary to check (default settings.FFMPEG_PATH)

    Returns:
        Tuple of (available: bool, message: str)
    """
    path = ffmpeg_path or settings.FFMPEG_PATH
    try:
        result = subprocess.run(
            [path, "-version"],
            capture_output=True,
            timeout=5.0,
        )
        if result.returncode == 0:
            version_line = result.stdout.decode().split('\n')[0]
            return True, f"ffmpeg available: {version_line}"
        return False, f"ffmpeg returned error: {result.stderr.decode()[:100]}"
    except FileNotFoundError:
        return False, f"ffmpeg not found at {path}"
    except subprocess.TimeoutExpired:
        return False, "ffmpeg check timed out"
    except OSError as e:
        return False, f"Error checking ffmpeg: {e}"
