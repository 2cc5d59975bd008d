"""
ffmpeg argument builder for SimpliSafe FLV to HomeKit SRTP relaying.

Builds the transcoder argv for one stream session as three ordered groups:

    source: authenticated FLV input from the media server
    video:  H.264 re-encode sent as SRTP to the viewer's video port
    audio:  AAC-ELD (or Opus) sent as SRTP to the viewer's audio port

Each group is a list of entries; an entry is a flag followed by its values
(or a lone positional such as the output URL). Conditional rewrites are
applied in a fixed order (container width clamp, Opus audio, Raspberry Pi
hardware codecs) and user overrides are merged last.

The builder is deterministic and never spawns anything.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from simplicam.config.camera import CameraOptions, OverrideOptions
from simplicam.schemas.camera import CameraDetails
from simplicam.services.stream_sessions import MediaEndpoint, PendingSession, StreamRequest

logger = logging.getLogger(__name__)

ArgEntry = List[Any]
ArgGroup = List[ArgEntry]

DEFAULT_STREAM_WIDTH = 1920
CONTAINER_MAX_WIDTH = 720
DEFAULT_VIDEO_MTU = 1316
AUDIO_PACKET_SIZE = 188
DEFAULT_AUDIO_BITRATE = 96  # kbps
DEFAULT_AUDIO_SAMPLE_RATE = 16  # kHz
VIDEO_PAYLOAD_TYPE = 99
AUDIO_PAYLOAD_TYPE = 110
SRTP_SUITE = "AES_CM_128_HMAC_SHA1_80"


@dataclass
class FfmpegArgs:
    """
    Argument groups for one transcoder invocation.

    Attributes:
        source: Input entries
        video: Video output entries (empty when video was not negotiated)
        audio: Audio output entries (empty when audio was not negotiated)
        stream_params: Effective width/fps/bitrates, for logging
    """
    source: ArgGroup
    video: ArgGroup
    audio: ArgGroup
    stream_params: Dict[str, Any] = field(default_factory=dict)

    def flatten(self) -> List[str]:
        """Final argv tail: every value stringified, strings stripped."""
        argv: List[str] = []
        for group in (self.source, self.video, self.audio):
            for entry in group:
                for value in entry:
                    argv.append(value.strip() if isinstance(value, str) else str(value))
        return argv


def _find(group: ArgGroup, flag: str) -> Optional[ArgEntry]:
    for entry in group:
        if entry and entry[0] == flag:
            return entry
    return None


def _entry(flag: str, value: Any) -> ArgEntry:
    # None and True both mean a bare flag
    if value is None or value is True:
        return [flag]
    return [flag, value]


def merge_overrides(group: ArgGroup, overrides: OverrideOptions, prepend: bool = False) -> ArgGroup:
    """
    Merge user overrides into an argument group.

    For each override, in order:
    - flag present, value False: every entry with that flag is removed
    - flag present, other value: the first matching entry takes the value
    - flag absent, value False: ignored
    - flag absent, other value: a new entry is prepended or appended

    Applying the same overrides twice gives the same result as applying
    them once.

    Args:
        group: Argument entries to merge into (not modified)
        overrides: Normalized override mapping
        prepend: Insert new flags at the front (source group) instead of the end

    Returns:
        New argument group
    """
    merged = [list(entry) for entry in group]
    for flag, value in overrides.items():
        existing = _find(merged, flag)
        if existing is not None:
            if value is False:
                merged = [entry for entry in merged if entry[0] != flag]
            else:
                existing[1:] = _entry(flag, value)[1:]
        elif value is not False:
            if prepend:
                merged.insert(0, _entry(flag, value))
            else:
                merged.append(_entry(flag, value))
    return merged


def _srtp_url(address: str, endpoint: MediaEndpoint, packet_size: int) -> str:
    return (
        f"srtp://{address}:{endpoint.port}"
        f"?rtcpport={endpoint.port}&localrtcpport={endpoint.port}&pkt_size={packet_size}"
    )


def build_ffmpeg_args(
    session: PendingSession,
    camera: CameraDetails,
    request: StreamRequest,
    options: CameraOptions,
    server_address: str,
    access_token: str,
    constrained_binary: bool = False,
) -> FfmpegArgs:
    """
    Build the transcoder arguments for a stream start.

    Args:
        session: Negotiated endpoints for the session
        camera: Camera record (fps and bitrate ceilings, uuid)
        request: Start request with the viewer's selected parameters
        options: Per-camera options (hardware codecs, overrides)
        server_address: Resolved media server IP
        access_token: Bearer token for the media server
        constrained_binary: Running in a container on the bundled ffmpeg,
            which cannot output more than 720px wide

    Returns:
        FfmpegArgs with source, video and audio groups
    """
    admin = camera.camera_settings.admin
    video_request = request.video
    audio_request = request.audio

    width = video_request.width or DEFAULT_STREAM_WIDTH
    fps = admin.fps
    if video_request.fps and video_request.fps < fps:
        fps = video_request.fps
    video_bitrate = admin.bit_rate
    if video_request.max_bit_rate and video_request.max_bit_rate < video_bitrate:
        video_bitrate = video_request.max_bit_rate
    audio_bitrate = (audio_request.max_bit_rate if audio_request else None) or DEFAULT_AUDIO_BITRATE
    audio_sample_rate = (audio_request.sample_rate if audio_request else None) or DEFAULT_AUDIO_SAMPLE_RATE
    mtu = video_request.mtu or DEFAULT_VIDEO_MTU

    source: ArgGroup = [
        ["-re"],
        ["-headers", f"Authorization: Bearer {access_token}"],
        ["-i", f"https://{server_address}/v1/{camera.uuid}/flv?x={width}&audioEncoding=AAC"],
    ]

    video: ArgGroup = []
    if session.video:
        video = [
            ["-map", "0:0"],
            ["-vcodec", "libx264"],
            ["-tune", "zerolatency"],
            ["-preset", "superfast"],
            ["-pix_fmt", "yuv420p"],
            ["-r", fps],
            ["-f", "rawvideo"],
            ["-vf", f"scale={width}:-2"],
            ["-b:v", f"{video_bitrate}k"],
            ["-bufsize", f"{2 * video_bitrate}k"],
            ["-maxrate", f"{video_bitrate}k"],
            ["-payload_type", VIDEO_PAYLOAD_TYPE],
            ["-ssrc", session.video.ssrc],
            ["-f", "rtp"],
            ["-srtp_out_suite", SRTP_SUITE],
            ["-srtp_out_params", session.video.srtp_params],
            [_srtp_url(session.address, session.video, mtu)],
        ]

    audio: ArgGroup = []
    if session.audio:
        audio = [
            ["-map", "0:1"],
            ["-acodec", "libfdk_aac"],
            ["-flags", "+global_header"],
            ["-profile:a", "aac_eld"],
            ["-ac", "1"],
            ["-ar", f"{audio_sample_rate}k"],
            ["-b:a", f"{audio_bitrate}k"],
            ["-bufsize", f"{2 * audio_bitrate}k"],
            ["-payload_type", AUDIO_PAYLOAD_TYPE],
            ["-ssrc", session.audio.ssrc],
            ["-f", "rtp"],
            ["-srtp_out_suite", SRTP_SUITE],
            ["-srtp_out_params", session.audio.srtp_params],
            [_srtp_url(session.address, session.audio, AUDIO_PACKET_SIZE)],
        ]

    if constrained_binary:
        width = min(width, CONTAINER_MAX_WIDTH)
        scale = _find(video, "-vf")
        if scale is not None:
            scale[1] = f"scale={width}:-2"
        logger.debug(
            "Running in a container with the bundled ffmpeg, limiting to 720px wide",
            extra={"camera_id": camera.uuid, "width": width}
        )

    if audio_request and audio_request.codec.upper() == "OPUS":
        source_input = _find(source, "-i")
        source_input[1] = source_input[1].replace("&audioEncoding=AAC", "")
        codec = _find(audio, "-acodec")
        if codec is not None:
            codec[1] = "libopus"
        audio = [entry for entry in audio if entry[0] != "-profile:a"]

    if options.enable_hwaccel_rpi:
        source.insert(source.index(_find(source, "-i")), ["-vcodec", "h264_mmal"])
        encoder = _find(video, "-vcodec")
        if encoder is not None:
            encoder[1] = "h264_omx"
        video = [entry for entry in video if entry[0] not in ("-tune", "-preset")]

    source = merge_overrides(source, options.source_options, prepend=True)
    video = merge_overrides(video, options.video_options)
    audio = merge_overrides(audio, options.audio_options)

    return FfmpegArgs(
        source=source,
        video=video,
        audio=audio,
        stream_params={
            "width": width,
            "fps": fps,
            "video_bitrate": video_bitrate,
            "audio_bitrate": audio_bitrate,
            "audio_sample_rate": audio_sample_rate,
            "mtu": mtu,
        },
    )


def sanitize_ffmpeg_command(cmd: List[str]) -> str:
    """
    Sanitize an ffmpeg command for display, removing secrets.

    The bearer token in -headers and SRTP keying material are redacted and
    SRTP output URLs lose their query string.

    Args:
        cmd: Full ffmpeg command list

    Returns:
        Sanitized command string safe for logging
    """
    if not cmd:
        return ""

    sanitized = []
    redact_next = False

    for arg in cmd:
        arg = str(arg)
        if redact_next:
            redact_next = False
            sanitized.append("[REDACTED]")
            continue

        if arg in ("-srtp_out_params", "-srtp_in_params"):
            sanitized.append(arg)
            redact_next = True
        elif "Bearer " in arg:
            sanitized.append(re.sub(r"Bearer\s+\S+", "Bearer [REDACTED]", arg))
        elif arg.startswith("srtp://"):
            sanitized.append(arg.split("?")[0] + "?[params]")
        else:
            sanitized.append(arg)

    return " ".join(sanitized)
