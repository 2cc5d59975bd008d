"""Pydantic schemas for camera records and diagnostics"""
from simplicam.schemas.camera import (
    CameraAdminSettings,
    CameraSettings,
    CameraDetails,
    StreamDiagnostics,
)

__all__ = [
    "CameraAdminSettings",
    "CameraSettings",
    "CameraDetails",
    "StreamDiagnostics",
]
