"""MQTT sink built on paho-mqtt."""

import json
import logging
import threading
from typing import List, Optional

import paho.mqtt.client as mqtt

from .adapter import WireMessage
from .config import MQTTConfig
from .exceptions import DeliveryError, SinkConnectionError
from .publisher import Sink

logger = logging.getLogger(__name__)


class MQTTSink(Sink):
    """Publishes wire messages to an MQTT broker.

    Publishes are QoS-acknowledged: publish() blocks until the broker
    acknowledges (or the ack timeout expires) so failures surface to the
    publisher's retry loop.
    """

    def __init__(self, config: MQTTConfig, dry_run: bool = False, ack_timeout_s: float = 5.0):
        self.config = config
        self.dry_run = dry_run
        self.ack_timeout_s = ack_timeout_s

        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._connect_rc = None

        # Stats
        self._messages_published = 0
        self._messages_dropped = 0
        self._stats_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def messages_published(self) -> int:
        return self._messages_published

    @property
    def messages_dropped(self) -> int:
        return self._messages_dropped

    def connect(self) -> None:
        """Connect to the MQTT broker; raises SinkConnectionError on failure."""
        if self.dry_run:
            logger.info("Dry run mode - not connecting to MQTT broker")
            self._connected.set()
            return

        self._client = mqtt.Client(
            client_id=self.config.client_id,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        if self.config.username:
            self._client.username_pw_set(self.config.username, self.config.password)

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect

        logger.info(f"Connecting to MQTT broker {self.config.broker}:{self.config.port}")
        try:
            self._client.connect(self.config.broker, self.config.port)
        except (OSError, ValueError) as e:
            self._client = None
            raise SinkConnectionError(
                f"Failed to connect to MQTT broker {self.config.broker}:{self.config.port}: {e}"
            ) from e

        self._client.loop_start()

        if not self._connected.wait(timeout=self.config.connect_timeout_s):
            self._client.loop_stop()
            self._client = None
            detail = f"rc={self._connect_rc}" if self._connect_rc is not None else "timed out"
            raise SinkConnectionError(
                f"MQTT broker {self.config.broker}:{self.config.port} did not accept "
                f"the connection ({detail})"
            )

    def disconnect(self) -> None:
        """Disconnect from the MQTT broker."""
        if self._client and not self.dry_run:
            self._client.disconnect()
            self._client.loop_stop()
            self._client = None

        self._connected.clear()
        logger.info(
            f"Disconnected from MQTT broker "
            f"({self._messages_published} published, {self._messages_dropped} dropped)"
        )

    def publish(self, message: WireMessage) -> None:
        payload_str = json.dumps(message.payload)

        if self.dry_run:
            logger.debug(f"[DRY RUN] {message.topic}: {payload_str[:100]}")
            self._count(published=1)
            return

        if not self._client or not self.connected:
            self._count(dropped=1)
            raise DeliveryError(message.topic, RuntimeError("not connected to MQTT broker"))

        try:
            result = self._client.publish(
                message.topic, payload_str, qos=message.qos, retain=message.retain
            )
            if result.rc != mqtt.MQTT_ERR_SUCCESS:
                raise DeliveryError(
                    message.topic, RuntimeError(mqtt.error_string(result.rc))
                )
            if message.qos > 0:
                result.wait_for_publish(timeout=self.ack_timeout_s)
                if not result.is_published():
                    raise DeliveryError(
                        message.topic,
                        TimeoutError(f"no broker ack within {self.ack_timeout_s}s"),
                    )
        except DeliveryError:
            self._count(dropped=1)
            raise
        except (RuntimeError, ValueError, OSError) as e:
            self._count(dropped=1)
            raise DeliveryError(message.topic, e) from e

        self._count(published=1)

    def publish_batch(self, messages: List[WireMessage]) -> None:
        """MQTT has no batch primitive: publish each, fail if any failed."""
        failures = []
        for message in messages:
            try:
                self.publish(message)
            except DeliveryError as e:
                failures.append(e)

        if failures:
            raise DeliveryError(
                f"batch of {len(messages)}",
                RuntimeError(f"{len(failures)} message(s) failed, first: {failures[0]}"),
            )

    def _count(self, published: int = 0, dropped: int = 0) -> None:
        with self._stats_lock:
            self._messages_published += published
            self._messages_dropped += dropped

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle connection callback."""
        self._connect_rc = rc
        if rc == 0:
            self._connected.set()
            logger.info("Connected to MQTT broker")
        else:
            logger.error(f"Connection failed with code {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle disconnection callback."""
        self._connected.clear()
        if rc != 0:
            logger.warning(f"Unexpected disconnection (rc={rc})")
