"""
Camera Pydantic Schemas

Defines the SimpliSafe camera record consumed from the cloud client and the
streaming diagnostics reported per camera accessory.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


class CameraAdminSettings(BaseModel):
    """Device-level encoder capabilities from the camera's admin settings."""
    fps: int = Field(20, gt=0, description="Maximum frame rate the camera delivers")
    bit_rate: int = Field(284, alias="bitRate", gt=0, description="Video bitrate ceiling in kbps")
    firmware_version: str = Field("1.0.0", alias="firmwareVersion")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CameraSettings(BaseModel):
    """User-facing camera settings, including the privacy shutter policy."""
    camera_name: str = Field("Camera", alias="cameraName")
    picture_quality: str = Field(
        "720p",
        alias="pictureQuality",
        description="Maximum supported resolution, e.g. '480p', '720p', '1080p'"
    )
    shutter_off: str = Field("open", alias="shutterOff", description="Shutter state while alarm is OFF")
    shutter_home: str = Field("open", alias="shutterHome", description="Shutter state while alarm is HOME")
    shutter_away: str = Field("open", alias="shutterAway", description="Shutter state while alarm is AWAY")
    admin: CameraAdminSettings = Field(default_factory=CameraAdminSettings)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("picture_quality", mode="after")
    @classmethod
    def validate_picture_quality(cls, v: str) -> str:
        """pictureQuality must start with a pixel height such as '720p'."""
        if not v.split("p")[0].isdigit():
            raise ValueError(f"Unrecognized pictureQuality: {v!r}")
        return v

    @property
    def max_supported_height(self) -> int:
        """Pixel height parsed from pictureQuality ('1080p' -> 1080)."""
        return int(self.picture_quality.split("p")[0])


class CameraDetails(BaseModel):
    """
    A SimpliSafe camera as returned by the cloud client.

    Example:
        {
            "uuid": "3a5ef1c9d8e4",
            "model": "SS001",
            "cameraSettings": {
                "cameraName": "Living Room",
                "pictureQuality": "720p",
                "shutterHome": "closed",
                "admin": {"fps": 20, "bitRate": 284, "firmwareVersion": "2.6.1.107"}
            }
        }
    """
    uuid: str = Field(..., min_length=1, description="Camera identifier (also the sensor serial)")
    model: str = Field("SS001", description="Hardware model, e.g. SS001 (indoor), SS002 (doorbell)")
    camera_settings: CameraSettings = Field(default_factory=CameraSettings, alias="cameraSettings")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def name(self) -> str:
        return self.camera_settings.camera_name


class StreamDiagnostics(BaseModel):
    """Streaming and event socket diagnostics for one camera accessory."""
    camera_id: str = Field(..., description="Camera identifier")
    camera_name: str = Field(..., description="Camera display name")
    reachable: bool = Field(..., description="Whether the camera was online at the last check")
    pending_sessions: List[str] = Field(default_factory=list, description="Prepared but not started sessions")
    active_sessions: List[str] = Field(default_factory=list, description="Sessions with a running transcoder")
    subscription_state: str = Field(..., description="Event socket state")
    socket_failures: int = Field(0, description="Consecutive rate-limited subscribe attempts")
    motion_active: bool = Field(False, description="Whether a motion window is open")
    media_address: Optional[str] = Field(None, description="Last resolved media server address")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "camera_id": "3a5ef1c9d8e4",
                "camera_name": "Living Room",
                "reachable": True,
                "pending_sessions": [],
                "active_sessions": ["0b0c6c1e-6f0f-4b5e-9b8e-2f3b1f1d9a10"],
                "subscription_state": "connected",
                "socket_failures": 0,
                "motion_active": False,
                "media_address": "52.1.2.3"
            }
        }
    )
