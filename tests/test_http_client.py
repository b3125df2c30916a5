"""Tests for the HTTP ingestion sink."""

import json

import httpx
import pytest

from cnc_uns_sim.adapter import Schema, WireMessage
from cnc_uns_sim.config import HTTPConfig
from cnc_uns_sim.exceptions import DeliveryError, SinkConnectionError
from cnc_uns_sim.http_client import HTTPSink


def make_message(tag="spindle_speed"):
    return WireMessage(
        topic=f"umh.v1.acme.plant-a.machining.cell-01.cnc-001._raw.{tag}",
        payload={"value": 4500, "timestamp_ms": 1700000000000},
        schema=Schema.UMH,
        location_path="acme.plant-a.machining.cell-01.cnc-001",
        tag_name=tag,
        metadata={"unit": "rpm", "quality": "good"},
    )


class FakeIngestion:
    """Records requests and answers with configurable status codes."""

    def __init__(self, health=200, root=200, data=200):
        self.health = health
        self.root = root
        self.data = data
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/health":
            return httpx.Response(self.health)
        if request.url.path == "/":
            return httpx.Response(self.root)
        return httpx.Response(self.data, json={"ok": self.data < 400})

    def posted(self):
        return [
            (r.url.path, json.loads(r.content)) for r in self.requests if r.method == "POST"
        ]


class TestHTTPSink:
    """Tests for HTTPSink."""

    @pytest.fixture
    def server(self):
        return FakeIngestion()

    @pytest.fixture
    def sink(self, server):
        return HTTPSink(HTTPConfig(url="http://umh.local:8080"), transport=httpx.MockTransport(server))

    def test_connect_probes_health(self, sink, server):
        sink.connect()

        assert [r.url.path for r in server.requests] == ["/health"]

    def test_connect_falls_back_to_root(self, sink, server):
        server.health = 404

        sink.connect()

        assert [r.url.path for r in server.requests] == ["/health", "/"]

    def test_connect_failure(self, sink, server):
        server.health = 503
        server.root = 503

        with pytest.raises(SinkConnectionError):
            sink.connect()

    def test_connect_network_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        sink = HTTPSink(HTTPConfig(), transport=httpx.MockTransport(refuse))

        with pytest.raises(SinkConnectionError):
            sink.connect()

    def test_publish(self, sink, server):
        sink.connect()
        message = make_message()

        sink.publish(message)

        ((path, body),) = server.posted()
        assert path == "/api/v1/data"
        assert body["topic"] == message.topic
        assert body["payload"] == message.payload
        assert body["metadata"] == message.metadata
        assert isinstance(body["timestamp"], int)

    def test_publish_batch(self, sink, server):
        sink.connect()

        sink.publish_batch([make_message("a"), make_message("b")])

        ((path, body),) = server.posted()
        assert path == "/api/v1/data/batch"
        assert [m["topic"].rsplit(".", 1)[1] for m in body["messages"]] == ["a", "b"]

    def test_publish_error_status(self, sink, server):
        sink.connect()
        server.data = 500

        with pytest.raises(DeliveryError) as exc_info:
            sink.publish(make_message())
        assert exc_info.value.destination == make_message().topic
        assert isinstance(exc_info.value.cause, httpx.HTTPStatusError)

    def test_publish_before_connect(self, sink):
        with pytest.raises(DeliveryError):
            sink.publish(make_message())

    def test_disconnect(self, sink):
        sink.connect()
        sink.disconnect()

        with pytest.raises(DeliveryError):
            sink.publish(make_message())
