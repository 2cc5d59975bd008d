"""Application configuration using Pydantic Settings"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import Optional
from pathlib import Path
import ipaddress


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None  # Defaults to ./data/logs

    # Transcoder
    FFMPEG_PATH: str = "ffmpeg"

    # SimpliSafe media server (live FLV feed and MJPEG snapshots)
    MEDIA_HOST: str = "media.simplisafe.com"
    SNAPSHOT_TIMEOUT_SECONDS: float = 10.0

    # Real-time event socket
    SOCKET_RETRY_INTERVAL: float = 1.0  # Base reconnect interval in seconds
    MOTION_RESET_SECONDS: float = 5.0  # Motion sensor clears after this window

    # HomeKit streaming
    STREAM_ADDRESS: Optional[str] = None  # Auto-detected if not set
    CAMERA_STREAM_COUNT: int = 2

    @field_validator('STREAM_ADDRESS', mode='after')
    @classmethod
    def validate_stream_address(cls, v: Optional[str]) -> Optional[str]:
        """Validate STREAM_ADDRESS is a literal IPv4 or IPv6 address."""
        if v is not None and v.strip():
            try:
                ipaddress.ip_address(v.strip())
            except ValueError:
                raise ValueError(f"STREAM_ADDRESS must be an IP address, got {v!r}")
            return v.strip()
        return None

    @field_validator('SOCKET_RETRY_INTERVAL', 'MOTION_RESET_SECONDS', mode='after')
    @classmethod
    def validate_positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Intervals must be greater than zero")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


def running_in_container() -> bool:
    """
    Detect whether the process runs inside a Docker-style container.

    Containers ship their own ffmpeg build, which is limited to 720px wide
    output unless a custom binary is configured.
    """
    if Path("/.dockerenv").exists():
        return True
    try:
        cgroup = Path("/proc/self/cgroup").read_text(encoding="utf-8")
    except OSError:
        return False
    return "docker" in cgroup or "containerd" in cgroup


# Global settings instance
settings = Settings()
