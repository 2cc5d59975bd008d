"""
Per-camera configuration.

Defines the user-supplied options for each camera accessory: a custom ffmpeg
binary, Raspberry Pi hardware acceleration, and argument overrides for the
three ffmpeg argument groups (source, video, audio).

Overrides accept two shapes:
- a mapping of flag to value, e.g. {"-vcodec": "copy", "-tune": False}
- the legacy single-string form, e.g. "-vcodec copy -g 30"

Both are normalized once, when the options are loaded, into an ordered
mapping. A value of False removes the flag from its group.
"""
import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# Camera models with a physical privacy shutter
PRIVACY_SHUTTER_MODELS = frozenset({"SS001"})

# Camera models with a doorbell button
DOORBELL_MODELS = frozenset({"SS002"})

# Override value: replacement value, None for a bare flag, False to remove
OverrideValue = Union[bool, int, float, str, None]
OverrideOptions = Dict[str, OverrideValue]


def parse_override_string(options: str) -> OverrideOptions:
    """
    Parse the legacy string form of ffmpeg argument overrides.

    The string is split on '-'; each chunk is re-prefixed with '-' and split
    on spaces. The first token is the flag, the second its value. A flag
    with no value is kept as a bare flag. Values that contain '-' cannot be
    expressed in this form; use the mapping form for those.

    Args:
        options: Override string, e.g. "-vcodec copy -g 30"

    Returns:
        Ordered mapping, e.g. {"-vcodec": "copy", "-g": "30"}
    """
    parsed: OverrideOptions = {}
    for chunk in options.split("-"):
        if not chunk:
            continue
        tokens = [token for token in f"-{chunk}".split(" ") if token]
        if tokens[0] == "-":
            continue
        parsed[tokens[0]] = tokens[1] if len(tokens) > 1 else None
    return parsed


def normalize_overrides(options: Any) -> OverrideOptions:
    """
    Normalize either override shape into an ordered mapping.

    Args:
        options: None, a legacy override string, or a mapping

    Returns:
        Ordered mapping of flag to override value

    Raises:
        ValueError: If options is neither a string nor a mapping
    """
    if options is None:
        return {}
    if isinstance(options, str):
        return parse_override_string(options)
    if isinstance(options, dict):
        return {str(flag).strip(): value for flag, value in options.items()}
    raise ValueError(f"Overrides must be a string or a mapping, got {type(options).__name__}")


class CameraOptions(BaseModel):
    """
    User configuration for a single camera accessory.

    Attributes:
        ffmpeg_path: Custom ffmpeg binary; disables the container width clamp
        enable_hwaccel_rpi: Use the Raspberry Pi MMAL decoder / OMX encoder
        source_options: Overrides for the input group (new flags are prepended)
        video_options: Overrides for the video group (new flags are appended)
        audio_options: Overrides for the audio group (new flags are appended)
    """
    ffmpeg_path: Optional[str] = Field(None, alias="ffmpegPath")
    enable_hwaccel_rpi: bool = Field(False, alias="enableHwaccelRpi")
    source_options: OverrideOptions = Field(default_factory=dict, alias="sourceOptions")
    video_options: OverrideOptions = Field(default_factory=dict, alias="videoOptions")
    audio_options: OverrideOptions = Field(default_factory=dict, alias="audioOptions")

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    @field_validator("source_options", "video_options", "audio_options", mode="before")
    @classmethod
    def validate_overrides(cls, v: Any) -> OverrideOptions:
        return normalize_overrides(v)

    @field_validator("ffmpeg_path", mode="after")
    @classmethod
    def validate_ffmpeg_path(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


def load_camera_options(raw: Optional[Union[Dict[str, Any], CameraOptions]]) -> CameraOptions:
    """
    Load camera options from a config mapping.

    Args:
        raw: Mapping in either camelCase or snake_case, an existing
            CameraOptions, or None for defaults

    Returns:
        Validated CameraOptions with normalized overrides
    """
    if isinstance(raw, CameraOptions):
        return raw
    options = CameraOptions.model_validate(raw or {})
    if options.source_options or options.video_options or options.audio_options:
        logger.debug(
            "Loaded ffmpeg argument overrides",
            extra={
                "source_overrides": list(options.source_options),
                "video_overrides": list(options.video_options),
                "audio_overrides": list(options.audio_options),
            }
        )
    return options
