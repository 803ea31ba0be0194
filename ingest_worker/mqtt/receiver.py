"""Bus connection manager.

Owns the paho-mqtt client and its subscription lifecycle:

  DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED -> ...

paho's network thread reconnects forever with capped exponential backoff;
only ``stop()`` leads to the terminal STOPPED state. The subscription is
re-issued on every successful connect because the broker session is not
assumed to survive a drop.

Each inbound message becomes exactly one task on the asyncio loop. The
number of in-flight tasks is bounded: when the bound is reached the network
thread waits for a free slot, which stalls the QoS 1 flow from the broker
instead of growing an unbounded queue.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Optional

import paho.mqtt.client as mqtt

from common.config import Settings, mask_url
from .receiver_stats import ReceiverStats

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes], Awaitable[Any]]

# How often a waiting network thread re-checks whether we are shutting down.
SLOT_POLL_SECONDS = 0.5


class BusState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STOPPED = "stopped"


class BusConnectionManager:
    """Receptor MQTT con reconexión automática y concurrencia acotada."""

    def __init__(
        self,
        settings: Settings,
        on_message: MessageCallback,
        client_factory: Optional[Callable[[], mqtt.Client]] = None,
    ):
        self._settings = settings
        self._on_message_cb = on_message
        self._client_factory = client_factory or self._create_client

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = BusState.DISCONNECTED
        self._accepting = False

        self._slots = threading.BoundedSemaphore(settings.max_inflight)
        self._inflight: set[asyncio.Task] = set()
        self._stats = ReceiverStats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Starts the network thread; connection happens in the background."""
        if self._client is not None:
            raise RuntimeError("bus connection manager already started")

        self._loop = asyncio.get_running_loop()
        self._client = self._client_factory()
        self._client.on_pre_connect = self._on_pre_connect
        self._client.on_connect = self._on_connect
        self._client.on_connect_fail = self._on_connect_fail
        self._client.on_disconnect = self._on_disconnect
        self._client.on_subscribe = self._on_subscribe
        self._client.on_message = self._on_message

        self._accepting = True
        self._set_state(BusState.CONNECTING)
        logger.info(
            "[MQTT] Connecting to %s topic=%s qos=%d max_inflight=%d",
            mask_url(self._settings.mqtt_url),
            self._settings.mqtt_topic,
            self._settings.mqtt_qos,
            self._settings.max_inflight,
        )
        self._client.connect_async(
            self._settings.mqtt_host,
            self._settings.mqtt_port,
            keepalive=self._settings.mqtt_keepalive,
        )
        self._client.loop_start()

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stops accepting messages, then lets in-flight tasks finish.

        Tasks still running after ``grace`` seconds are cancelled.
        """
        if grace is None:
            grace = self._settings.shutdown_grace
        self._accepting = False

        if self._client is not None:
            try:
                self._client.disconnect()
            except Exception as e:
                logger.warning("[MQTT] Error disconnecting: %s", e)
            # loop_stop joins the network thread, which may still be waiting for a slot.
            await asyncio.to_thread(self._client.loop_stop)

        if not await self.drain(grace):
            pending = list(self._inflight)
            logger.warning("[MQTT] Cancelling %d in-flight messages after %.1fs grace", len(pending), grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._set_state(BusState.STOPPED)
        logger.info("[MQTT] Stopped. %s", self._stats)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Waits until no message is in flight. Returns False on timeout."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            # Let dispatches scheduled from the network thread create their tasks.
            await asyncio.sleep(0)
            if not self._inflight:
                return True
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._inflight), timeout=remaining)

    def _create_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"{self._settings.mqtt_client_id}-{int(time.time())}",
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(logging.getLogger("paho.mqtt"))
        client.reconnect_delay_set(
            min_delay=self._settings.mqtt_reconnect_min_delay,
            max_delay=self._settings.mqtt_reconnect_max_delay,
        )
        if self._settings.mqtt_username:
            client.username_pw_set(self._settings.mqtt_username, self._settings.mqtt_password)
        if self._settings.mqtt_tls:
            client.tls_set()
        return client

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _set_state(self, state: BusState) -> None:
        if self._state == BusState.STOPPED:
            return
        if state != self._state:
            logger.debug("[MQTT] State %s -> %s", self._state.value, state.value)
        self._state = state

    def _on_pre_connect(self, client, userdata):
        self._set_state(BusState.CONNECTING)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self._set_state(BusState.DISCONNECTED)
            logger.error("[MQTT] Connection refused: %s", reason_code)
            return

        self._stats.connects += 1
        if self._stats.connects > 1:
            self._stats.reconnect_count += 1
        self._set_state(BusState.CONNECTED)
        logger.info("[MQTT] Connected to broker (connects=%d)", self._stats.connects)

        topic = self._settings.mqtt_topic
        result, mid = client.subscribe(topic, qos=self._settings.mqtt_qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error("[MQTT] Subscribe to %s failed: %s", topic, mqtt.error_string(result))
        else:
            logger.info("[MQTT] Subscribed to %s (qos=%d)", topic, self._settings.mqtt_qos)

    def _on_connect_fail(self, client, userdata):
        self._set_state(BusState.DISCONNECTED)
        logger.warning(
            "[MQTT] Connection attempt failed, retrying within %ds",
            self._settings.mqtt_reconnect_max_delay,
        )

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._set_state(BusState.DISCONNECTED)
        if self._accepting:
            logger.warning("[MQTT] Disconnected (%s), reconnecting", reason_code)
        else:
            logger.info("[MQTT] Disconnected")

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        for rc in reason_code_list:
            if rc.is_failure:
                logger.error("[MQTT] Subscription rejected by broker: %s", rc)

    def _on_message(self, client, userdata, message):
        self._stats.received += 1
        self._stats.last_message_at = time.time()

        if not self._acquire_slot():
            self._stats.dropped += 1
            logger.warning("[MQTT] Dropped message during shutdown topic=%s", message.topic)
            return

        try:
            self._loop.call_soon_threadsafe(self._dispatch, message.topic, bytes(message.payload))
        except RuntimeError:
            # Event loop already closed.
            self._slots.release()
            self._stats.dropped += 1

    def _acquire_slot(self) -> bool:
        if not self._accepting:
            return False
        if self._slots.acquire(blocking=False):
            return True
        self._stats.backpressure_waits += 1
        logger.debug("[MQTT] In-flight limit reached, waiting for a free slot")
        while self._accepting:
            if self._slots.acquire(timeout=SLOT_POLL_SECONDS):
                return True
        return False

    # ------------------------------------------------------------------
    # Dispatch (event loop)
    # ------------------------------------------------------------------

    def _dispatch(self, topic: str, payload: bytes) -> None:
        task = self._loop.create_task(self._on_message_cb(topic, payload))
        self._inflight.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self._slots.release()
        self._stats.completed += 1
        if not task.cancelled() and task.exception() is not None:
            logger.error("[MQTT] Message handler failed: %r", task.exception())

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> BusState:
        return self._state

    @property
    def is_started(self) -> bool:
        return self._client is not None

    @property
    def is_connected(self) -> bool:
        return self._state == BusState.CONNECTED

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    @property
    def stats(self) -> dict:
        stats = self._stats.to_dict()
        stats.update(
            state=self._state.value,
            broker=f"{self._settings.mqtt_host}:{self._settings.mqtt_port}",
            topic=self._settings.mqtt_topic,
            inflight=len(self._inflight),
            max_inflight=self._settings.max_inflight,
        )
        return stats

    def health_check(self) -> dict:
        last = self._stats.last_message_at
        return {
            "healthy": self._accepting and self.is_connected,
            "running": self._accepting,
            "connected": self.is_connected,
            "state": self._state.value,
            "reconnect_count": self._stats.reconnect_count,
            "last_message_age_seconds": time.time() - last if last > 0 else None,
        }
