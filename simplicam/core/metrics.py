"""
Prometheus Metrics Registry

Provides Prometheus-compatible metrics for:
- HomeKit stream starts and active transcoder processes
- Snapshot requests
- Real-time event socket reconnects and dispatched camera events

set_app_info is called by create_camera_accessory. get_metrics and
get_content_type are for the host process that serves the scrape endpoint.
"""
import logging
from prometheus_client import (
    Counter, Gauge, Info,
    CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)

logger = logging.getLogger(__name__)

# Create a custom registry to avoid conflicts with default registry
REGISTRY = CollectorRegistry()

# ============================================================================
# Application Info
# ============================================================================

app_info = Info(
    'simplicam',
    'Application information',
    registry=REGISTRY
)

# ============================================================================
# Streaming Metrics
# ============================================================================

stream_starts_total = Counter(
    'simplicam_stream_starts_total',
    'Stream start attempts by result',
    ['camera_id', 'status'],
    registry=REGISTRY
)

streams_active = Gauge(
    'simplicam_streams_active',
    'Running transcoder processes per camera',
    ['camera_id'],
    registry=REGISTRY
)

# ============================================================================
# Snapshot Metrics
# ============================================================================

snapshot_requests_total = Counter(
    'simplicam_snapshot_requests_total',
    'Snapshot requests by result',
    ['camera_id', 'status'],
    registry=REGISTRY
)

# ============================================================================
# Event Socket Metrics
# ============================================================================

event_socket_reconnects_total = Counter(
    'simplicam_event_socket_reconnects_total',
    'Scheduled event socket reconnects',
    ['camera_id', 'reason'],
    registry=REGISTRY
)

camera_events_total = Counter(
    'simplicam_camera_events_total',
    'Real-time events dispatched to a camera',
    ['camera_id', 'event_type'],
    registry=REGISTRY
)


# ============================================================================
# Helper Functions
# ============================================================================

def set_app_info(version: str):
    """Set application info metric."""
    app_info.info({'version': version})


def record_stream_start(camera_id: str, status: str):
    """
    Record a stream start attempt.

    Args:
        camera_id: Camera ID
        status: Result status (success, stopped, rate_limited, error)
    """
    stream_starts_total.labels(camera_id=camera_id, status=status).inc()


def update_active_streams(camera_id: str, count: int):
    """
    Update the running transcoder count for a camera.

    Args:
        camera_id: Camera ID
        count: Number of live ffmpeg processes for this camera
    """
    streams_active.labels(camera_id=camera_id).set(count)


def record_snapshot_request(camera_id: str, status: str):
    """
    Record a snapshot request.

    Args:
        camera_id: Camera ID
        status: Result status (success, privacy_blocked, rate_limited, error)
    """
    snapshot_requests_total.labels(camera_id=camera_id, status=status).inc()


def record_event_socket_reconnect(camera_id: str, reason: str):
    """
    Record a scheduled event socket reconnect.

    Args:
        camera_id: Camera ID
        reason: Why the reconnect was scheduled (connection_lost, rate_limited)
    """
    event_socket_reconnects_total.labels(camera_id=camera_id, reason=reason).inc()


def record_camera_event(camera_id: str, event_type: str):
    """Record a real-time event that matched this camera."""
    camera_events_total.labels(camera_id=camera_id, event_type=event_type).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus metrics output.

    Returns:
        Prometheus text format metrics
    """
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get Prometheus content type header."""
    return CONTENT_TYPE_LATEST
