"""Cliente de bus sobre paho-mqtt.

- subscribe(): registra el handler y se (re)suscribe en cada conexión.
- publish(): QoS 1, espera confirmación hasta `timeout`; cualquier fallo
  es PublishError (el Dispatcher lo aísla por destino).

La reconexión la gestiona el loop de paho (`loop_start`).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional

import paho.mqtt.client as mqtt

from ..core.domain.interfaces import BusClient, MessageHandler
from ..core.domain.thing import Thing
from ..errors import PublishError

logger = logging.getLogger(__name__)

DEFAULT_QOS = 1
CONNECT_WAIT_SECONDS = 5.0


class PahoBusClient(BusClient):
    """BusClient respaldado por un `paho.mqtt.client.Client`."""

    def __init__(
        self,
        broker_host: str = "localhost",
        broker_port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "piot-ingest",
        qos: int = DEFAULT_QOS,
        client: Optional[mqtt.Client] = None,
    ):
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.client_id = f"{client_id}-{int(time.time())}"
        self._qos = qos

        self._handlers: Dict[str, MessageHandler] = {}
        self._lock = threading.Lock()
        self._connected = threading.Event()

        self._client = client or mqtt.Client(
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        if username and password:
            self._client.username_pw_set(username, password)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, wait: float = CONNECT_WAIT_SECONDS) -> bool:
        logger.info("[MQTT] Connecting to %s:%d", self.broker_host, self.broker_port)
        try:
            self._client.connect(self.broker_host, self.broker_port, keepalive=60)
        except OSError as e:
            logger.error("[MQTT] Connect failed: %s", e)
            return False
        self._client.loop_start()

        if self._connected.wait(timeout=wait):
            logger.info("[MQTT] Started successfully")
            return True
        logger.error("[MQTT] Connection timeout")
        return False

    def stop(self) -> None:
        try:
            self._client.loop_stop()
            self._client.disconnect()
        except Exception as e:
            logger.warning("[MQTT] Error stopping: %s", e)
        self._connected.clear()
        logger.info("[MQTT] Stopped")

    def is_connected(self) -> bool:
        return self._connected.is_set()

    # ------------------------------------------------------------------
    # BusClient
    # ------------------------------------------------------------------

    def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        with self._lock:
            self._handlers[pattern] = handler
        if self.is_connected():
            self._client.subscribe(pattern, qos=self._qos)
            logger.info("[MQTT] Subscribed to %s", pattern)

    def publish(
        self,
        topic: str,
        payload: str,
        *,
        thing: Optional[Thing] = None,
        timeout: Optional[float] = None,
    ) -> None:
        try:
            info = self._client.publish(topic, payload, qos=self._qos)
        except ValueError as e:
            # paho valida el topic (wildcards, longitud) antes de encolar
            raise PublishError(f"Publish to {topic!r} rejected: {e}") from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Publish to {topic!r} failed: {mqtt.error_string(info.rc)}")
        try:
            info.wait_for_publish(timeout=timeout)
        except (RuntimeError, ValueError) as e:
            raise PublishError(f"Publish to {topic!r} failed: {e}") from e
        if not info.is_published():
            raise PublishError(f"Publish to {topic!r} not confirmed within {timeout}s")
        logger.debug(
            "[MQTT] Published topic=%s thing=%s",
            topic, thing.name if thing is not None else "-",
        )

    # ------------------------------------------------------------------
    # paho callbacks
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        if rc == 0:
            self._connected.set()
            logger.info("[MQTT] Connected to broker")
            with self._lock:
                patterns = list(self._handlers)
            for pattern in patterns:
                client.subscribe(pattern, qos=self._qos)
                logger.info("[MQTT] Subscribed to %s", pattern)
        else:
            self._connected.clear()
            logger.error("[MQTT] Connection failed: rc=%s", rc)

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        self._connected.clear()
        logger.warning("[MQTT] Disconnected (rc=%s)", rc)

    def _on_message(self, client, userdata, msg):
        with self._lock:
            handlers = [
                handler for pattern, handler in self._handlers.items()
                if mqtt.topic_matches_sub(pattern, msg.topic)
            ]
        for handler in handlers:
            try:
                handler(msg.topic, msg.payload)
            except Exception as e:
                logger.exception("[MQTT] Handler error topic=%s: %s", msg.topic, e)


class NullBusClient(BusClient):
    """No-op bus cuando MQTT está deshabilitado."""

    def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        logger.info("[MQTT] Bus disabled, not subscribing to %s", pattern)

    def publish(
        self,
        topic: str,
        payload: str,
        *,
        thing: Optional[Thing] = None,
        timeout: Optional[float] = None,
    ) -> None:
        logger.debug("[MQTT] Bus disabled, dropped publish topic=%s", topic)

    def is_connected(self) -> bool:
        return False
