"""
SimpliSafe cloud client interface.

The camera accessory consumes an authenticated SimpliSafe client owned by the
platform: camera list, alarm state and the real-time event socket. Only the
surface used here is described; authentication and token refresh live in the
client implementation.
"""
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union, runtime_checkable

from simplicam.core.exceptions import RateLimitError


class EventType(str, Enum):
    """Real-time event types delivered on the SimpliSafe event socket."""
    CONNECTED = "CONNECTED"
    DISCONNECT = "DISCONNECT"
    CONNECTION_LOST = "CONNECTION_LOST"
    CAMERA_MOTION = "CAMERA_MOTION"
    DOORBELL = "DOORBELL"


class AlarmState(str, Enum):
    """Alarm system state, used by the privacy shutter policy."""
    OFF = "OFF"
    HOME = "HOME"
    AWAY = "AWAY"


EventCallback = Callable[[Union[EventType, str], Optional[Dict[str, Any]]], Any]


@runtime_checkable
class CloudClient(Protocol):
    """
    Authenticated SimpliSafe client.

    Attributes:
        access_token: Current bearer token for the media server
        is_blocked: Whether the API is currently throttling this client
        next_attempt: Epoch seconds before which blocked requests must not be made
    """
    access_token: str
    is_blocked: bool
    next_attempt: float

    async def get_cameras(self) -> List[Dict[str, Any]]:
        """Cameras on the account, each with at least 'uuid' and 'status'."""
        ...

    async def get_alarm_state(self) -> Union[AlarmState, str]:
        """Current alarm state (OFF, HOME or AWAY)."""
        ...

    def subscribe_to_events(self, callback: EventCallback) -> Awaitable[None]:
        """
        Open the event socket and deliver events to callback.

        Raises:
            RateLimitError: If the subscribe request was throttled
        """
        ...

    def is_socket_connected(self) -> bool:
        ...


def is_rate_limited(client: CloudClient) -> bool:
    """True while the client is blocked and its retry time has not passed."""
    return bool(client.is_blocked) and time.time() < client.next_attempt


def ensure_not_rate_limited(client: CloudClient, action: str) -> None:
    """
    Fail fast before a network-facing operation when the API is throttling.

    Args:
        client: SimpliSafe cloud client
        action: Short description used in the error, e.g. "Camera snapshot request"

    Raises:
        RateLimitError: If the client is blocked and next_attempt is in the future
    """
    if is_rate_limited(client):
        raise RateLimitError(f"{action} blocked (rate limited)")
