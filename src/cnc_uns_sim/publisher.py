"""Reliable delivery of wire messages to a sink.

A sink is any transport with connect/publish/publish_batch/disconnect that
raises SinkConnectionError on connect and DeliveryError on publish. The
PublisherClient adds bounded retries with capped exponential backoff:

    delay(attempt) = min(base * 2^(attempt-1), max)   # 1000, 2000, 4000, 5000 ms
"""

import logging
import random
import time
from typing import Callable, List, Optional

from .adapter import WireMessage
from .exceptions import DeliveryError

logger = logging.getLogger(__name__)


class Sink:
    """Transport capability the publisher depends on."""

    def connect(self) -> None:
        raise NotImplementedError

    def publish(self, message: WireMessage) -> None:
        raise NotImplementedError

    def publish_batch(self, messages: List[WireMessage]) -> None:
        raise NotImplementedError

    def disconnect(self) -> None:
        raise NotImplementedError


def backoff_delay_ms(attempt: int, base_ms: int = 1000, max_ms: int = 5000) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return min(base_ms * 2 ** (attempt - 1), max_ms)


class PublisherClient:
    """Delivers messages to a sink with retry and backoff."""

    def __init__(
        self,
        sink: Sink,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 5000,
        jitter_pct: int = 0,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.sink = sink
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_pct = jitter_pct
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        """Verify connectivity once; SinkConnectionError propagates."""
        self.sink.connect()
        self._connected = True

    def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.sink.disconnect()

    def _delay_ms(self, attempt: int) -> float:
        delay = backoff_delay_ms(attempt, self.base_delay_ms, self.max_delay_ms)
        if self.jitter_pct > 0:
            jitter = self._rng.uniform(-self.jitter_pct, self.jitter_pct) / 100.0
            delay *= 1.0 + jitter
        return delay

    def _deliver(self, destination: str, send: Callable[[], None]) -> int:
        """Run `send` until it succeeds or retries run out; returns attempts used."""
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                send()
                if attempt > 1:
                    logger.info(f"Delivered to {destination} on attempt {attempt}")
                return attempt
            except DeliveryError as e:
                last_error = e.cause or e
                logger.warning(
                    f"Failed to publish to {destination} "
                    f"(attempt {attempt}/{self.max_retries}): {last_error}"
                )

            if attempt < self.max_retries:
                self._sleep(self._delay_ms(attempt) / 1000.0)

        raise DeliveryError(destination, last_error, attempts=self.max_retries)

    def publish(self, message: WireMessage) -> int:
        """Deliver one message; raises DeliveryError once retries are exhausted."""
        return self._deliver(message.topic, lambda: self.sink.publish(message))

    def publish_batch(self, messages: List[WireMessage]) -> int:
        """Deliver a batch as one unit; the whole batch is retried on failure."""
        if not messages:
            return 0
        destination = f"batch of {len(messages)} ({messages[0].topic} ...)"
        return self._deliver(destination, lambda: self.sink.publish_batch(messages))
