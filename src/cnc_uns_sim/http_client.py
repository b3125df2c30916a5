"""HTTP ingestion sink built on httpx.

Messages are posted to a UMH-Core style ingestion API:

    GET  /health             connectivity probe (falls back to GET /)
    POST /api/v1/data        {"topic", "payload", "metadata", "timestamp"}
    POST /api/v1/data/batch  {"messages": [...]}
"""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from .adapter import WireMessage
from .config import HTTPConfig
from .exceptions import DeliveryError, SinkConnectionError
from .publisher import Sink

logger = logging.getLogger(__name__)

DATA_PATH = "/api/v1/data"
BATCH_PATH = "/api/v1/data/batch"


class HTTPSink(Sink):
    """Posts wire messages to an HTTP ingestion endpoint."""

    def __init__(self, config: HTTPConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _envelope(self, message: WireMessage) -> Dict[str, Any]:
        body = message.to_dict()
        body["timestamp"] = int(time.time() * 1000)
        return body

    def _new_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.config.url,
            timeout=self.config.timeout_s,
            headers={"Content-Type": "application/json"},
            transport=self._transport,
        )

    def connect(self) -> None:
        """Probe the endpoint once; raises SinkConnectionError when unreachable."""
        logger.info(f"Connecting to ingestion endpoint {self.config.url}")
        client = self._new_client()
        try:
            response = self._probe(client)
        except httpx.HTTPError as e:
            client.close()
            raise SinkConnectionError(
                f"Ingestion endpoint {self.config.url} is unreachable: {e}"
            ) from e

        self._client = client
        logger.info(f"Connected to ingestion endpoint (status {response.status_code})")

    def _probe(self, client: httpx.Client) -> httpx.Response:
        try:
            response = client.get("/health")
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.debug(f"Health probe failed ({e}), trying root endpoint")

        response = client.get("/")
        response.raise_for_status()
        return response

    def disconnect(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("Disconnected from ingestion endpoint")

    def _post(self, path: str, body: Dict[str, Any], destination: str) -> None:
        if self._client is None:
            raise DeliveryError(destination, RuntimeError("not connected to ingestion endpoint"))

        try:
            response = self._client.post(path, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(destination, e) from e

        logger.debug(f"Posted {destination} (status {response.status_code})")

    def publish(self, message: WireMessage) -> None:
        self._post(DATA_PATH, self._envelope(message), message.topic)

    def publish_batch(self, messages: List[WireMessage]) -> None:
        body = {"messages": [self._envelope(message) for message in messages]}
        self._post(BATCH_PATH, body, f"batch of {len(messages)}")
