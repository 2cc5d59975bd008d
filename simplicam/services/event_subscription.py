"""
Real-time event subscription for one camera.

Keeps the camera subscribed to the SimpliSafe event socket and turns socket
events into HomeKit state:

- CAMERA_MOTION opens a motion window that closes after a few seconds of
  quiet (repeated motion extends it)
- DOORBELL fires a single-press ProgrammableSwitchEvent

Lost connections are retried after the base interval. Rate-limited
subscribe attempts back off exponentially (base, 2x, 4x, ...) without limit
until a CONNECTED event resets the counter.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from simplicam.core.config import settings
from simplicam.core.exceptions import RateLimitError
from simplicam.core.metrics import record_camera_event, record_event_socket_reconnect
from simplicam.core.retry import calculate_delay, socket_backoff
from simplicam.services.cloud_client import CloudClient, EventType

logger = logging.getLogger(__name__)

SOCKET_EVENTS = (EventType.CONNECTED, EventType.DISCONNECT, EventType.CONNECTION_LOST)


class SubscriptionState(str, Enum):
    """Event socket state as seen by one camera."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CONNECTION_LOST = "connection_lost"


class EventSubscriptionManager:
    """
    Event socket subscription and motion/doorbell dispatch for one camera.

    Attributes:
        camera_id: Camera uuid; events are matched on sensorSerial or internal.mainCamera
        state: Current SubscriptionState
        failure_count: Consecutive rate-limited subscribe attempts
        motion_active: True while a motion window is open
    """

    def __init__(
        self,
        camera_id: str,
        camera_name: str,
        client: CloudClient,
        set_motion_detected: Callable[[bool], Any],
        trigger_doorbell: Callable[[], Any],
        retry_interval: Optional[float] = None,
        motion_reset_seconds: Optional[float] = None,
    ):
        self.camera_id = camera_id
        self.camera_name = camera_name
        self.client = client
        self._set_motion_detected = set_motion_detected
        self._trigger_doorbell = trigger_doorbell
        self.retry_interval = retry_interval or settings.SOCKET_RETRY_INTERVAL
        self.motion_reset_seconds = motion_reset_seconds or settings.MOTION_RESET_SECONDS

        self.state = SubscriptionState.DISCONNECTED
        self.failure_count = 0
        self.motion_active = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._motion_reset_task: Optional[asyncio.Task] = None
        self._closed = False

    async def start(self) -> None:
        """
        Subscribe to real-time events.

        Never raises: rate limiting schedules a retry, anything else is logged.
        """
        if self._closed:
            return

        if self.client.is_socket_connected():
            logger.debug(f"{self.camera_name} camera now listening for real time events.")

        self.state = SubscriptionState.CONNECTING
        try:
            await self.client.subscribe_to_events(self._dispatch)
        except RateLimitError:
            delay = calculate_delay(self.failure_count, socket_backoff(self.retry_interval))
            logger.debug(
                f"{self.camera_name} camera caught RateLimitError, waiting {delay}s to retry...",
                extra={
                    "event_type": "event_socket_rate_limited",
                    "camera_id": self.camera_id,
                    "failure_count": self.failure_count,
                    "delay_seconds": delay,
                }
            )
            self._schedule_reconnect(delay, "rate_limited")
            self.failure_count += 1
        except Exception as e:
            self.state = SubscriptionState.DISCONNECTED
            logger.error(
                f"{self.camera_name} camera failed to subscribe to real time events: {e}",
                extra={"event_type": "event_socket_error", "camera_id": self.camera_id, "error": str(e)}
            )

    def _schedule_reconnect(self, delay: float, reason: str) -> None:
        if self._closed:
            return

        task = self._reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(
                f"Could not schedule event socket reconnect for {self.camera_name} - no running event loop",
                extra={"camera_id": self.camera_id}
            )
            return

        record_event_socket_reconnect(self.camera_id, reason)
        self._reconnect_task = loop.create_task(
            self._reconnect_after(delay),
            name=f"event_socket_reconnect_{self.camera_id}"
        )

    async def _reconnect_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self.start()
        except asyncio.CancelledError:
            # Superseded by a newer reconnect or closed
            pass

    def _is_relevant(self, data: Dict[str, Any]) -> bool:
        if data.get("sensorSerial") == self.camera_id:
            return True
        internal = data.get("internal")
        return isinstance(internal, dict) and internal.get("mainCamera") == self.camera_id

    def _dispatch(self, event: Union[EventType, str], data: Optional[Dict[str, Any]] = None) -> None:
        """Event socket callback. Never raises into the client."""
        try:
            self._handle_event(event, data)
        except Exception as e:
            logger.error(
                f"Error handling real time event {event} for {self.camera_name}: {e}",
                extra={"event_type": "camera_event_error", "camera_id": self.camera_id, "error": str(e)}
            )

    def _handle_event(self, event: Union[EventType, str], data: Optional[Dict[str, Any]]) -> None:
        if event == EventType.CONNECTED:
            logger.debug(f"{self.camera_name} camera now listening for real time events.")
            self.state = SubscriptionState.CONNECTED
            self.failure_count = 0
        elif event == EventType.DISCONNECT:
            logger.debug(f"{self.camera_name} camera real time events disconnected.")
            self.state = SubscriptionState.DISCONNECTED
        elif event == EventType.CONNECTION_LOST:
            if self.failure_count == 0:
                logger.debug(f"{self.camera_name} camera real time events connection lost. Attempting to reconnect...")
            self.state = SubscriptionState.CONNECTION_LOST
            self._schedule_reconnect(self.retry_interval, "connection_lost")

        if not data or not self._is_relevant(data):
            return

        event_name = event.value if isinstance(event, EventType) else str(event)
        logger.debug(
            f"{self.camera_name} camera received event: {event_name}",
            extra={"camera_id": self.camera_id, "camera_event": event_name}
        )

        if event == EventType.CAMERA_MOTION:
            record_camera_event(self.camera_id, event_name)
            self._handle_motion()
        elif event == EventType.DOORBELL:
            record_camera_event(self.camera_id, event_name)
            self._trigger_doorbell()
        elif event not in SOCKET_EVENTS:
            logger.debug(f"{self.camera_name} camera ignoring unhandled event: {event_name}")

    def _handle_motion(self) -> None:
        self.motion_active = True
        self._set_motion_detected(True)
        self._cancel_reset_timer()
        self._start_reset_timer()

    def _cancel_reset_timer(self) -> None:
        task = self._motion_reset_task
        self._motion_reset_task = None
        if task is not None and not task.done():
            task.cancel()

    def _start_reset_timer(self) -> None:
        try:
            loop = asyncio.get_running_loop()
            self._motion_reset_task = loop.create_task(
                self._motion_reset_coroutine(),
                name=f"motion_reset_{self.camera_id}"
            )
        except RuntimeError:
            logger.debug(
                f"Could not start motion reset timer for {self.camera_name} - no running event loop",
                extra={"camera_id": self.camera_id}
            )

    async def _motion_reset_coroutine(self) -> None:
        try:
            await asyncio.sleep(self.motion_reset_seconds)
        except asyncio.CancelledError:
            # Timer was cancelled (new motion arrived)
            return
        self.motion_active = False
        try:
            self._set_motion_detected(False)
        except Exception as e:
            logger.error(
                f"Error clearing motion for {self.camera_name}: {e}",
                extra={"camera_id": self.camera_id, "error": str(e)}
            )

    async def close(self) -> None:
        """Stop reconnecting and cancel the motion timer."""
        self._closed = True
        for task in (self._reconnect_task, self._motion_reset_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._motion_reset_task = None
        self.state = SubscriptionState.DISCONNECTED
