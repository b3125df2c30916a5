"""Tests for the reading format adapter."""

import math

import pytest

from cnc_uns_sim.adapter import (
    OutputFormat,
    ReadingFormatAdapter,
    Schema,
    WireMessage,
    hyphenate,
    underscore,
)
from cnc_uns_sim.config import UNSConfig
from cnc_uns_sim.exceptions import ValidationError
from cnc_uns_sim.generators import Category, Quality, SensorReading
from cnc_uns_sim.machines import default_roster

T0 = 1_700_000_000.0


@pytest.fixture
def profile():
    return default_roster("acme", "plant-a")[0]


@pytest.fixture
def reading():
    return SensorReading(
        key="spindle-speed",
        value=4500,
        unit="rpm",
        timestamp=T0,
        source="cnc-001",
        quality=Quality.GOOD,
        metadata={"max_rpm": 8100},
    )


class TestKeyCasing:
    """Tests for sensor key normalization."""

    def test_hyphenate(self):
        assert hyphenate("Spindle_Speed") == "spindle-speed"

    def test_underscore(self):
        assert underscore("spindle-speed") == "spindle_speed"


class TestUNS:
    """Tests for the hierarchical UNS schema."""

    @pytest.fixture
    def adapter(self):
        return ReadingFormatAdapter(OutputFormat.UNS)

    def test_topic(self, adapter, reading, profile):
        message = adapter.to_uns(reading, profile)
        assert message.topic == "acme/plant-a/machining/cell-01/cnc-001/info/sensors/spindle-speed"
        assert message.schema == Schema.UNS

    def test_topic_with_prefix(self, reading, profile):
        adapter = ReadingFormatAdapter(OutputFormat.UNS, UNSConfig(uns_prefix="umh/v1"))
        message = adapter.to_uns(reading, profile)
        assert message.topic.startswith("umh/v1/acme/plant-a/")

    def test_category_in_topic(self, adapter, profile):
        status = SensorReading(
            "operational", "running", "status", T0, "cnc-001", category=Category.STATUS
        )
        message = adapter.to_uns(status, profile)
        assert message.topic.endswith("/cnc-001/info/status/operational")

    def test_payload(self, adapter, reading, profile):
        payload = adapter.to_uns(reading, profile).payload

        assert payload["value"] == 4500
        assert payload["unit"] == "rpm"
        assert payload["quality"] == "good"
        assert payload["source"] == "cnc-001"
        assert payload["timestamp_ms"] == 1700000000000
        assert payload["timestamp"] == "2023-11-14T22:13:20.000Z"
        assert payload["metadata"] == {"max_rpm": 8100}

    def test_no_out_of_band_metadata(self, adapter, reading, profile):
        message = adapter.to_uns(reading, profile)
        assert message.metadata == {}
        assert "metadata" not in message.to_dict()


class TestUMH:
    """Tests for the compact UMH schema."""

    @pytest.fixture
    def adapter(self):
        return ReadingFormatAdapter(OutputFormat.UMH)

    def test_topic(self, adapter, reading, profile):
        message = adapter.to_umh(reading, profile)
        assert message.topic == "umh.v1.acme.plant-a.machining.cell-01.cnc-001._raw.spindle_speed"
        assert message.schema == Schema.UMH

    def test_compact_payload(self, adapter, reading, profile):
        message = adapter.to_umh(reading, profile)
        assert message.payload == {"value": 4500, "timestamp_ms": 1700000000000}

    def test_out_of_band_metadata(self, adapter, reading, profile):
        metadata = adapter.to_umh(reading, profile).metadata

        assert metadata["location_path"] == "acme.plant-a.machining.cell-01.cnc-001"
        assert metadata["data_contract"] == "_raw"
        assert metadata["tag_name"] == "spindle_speed"
        assert metadata["unit"] == "rpm"
        assert metadata["quality"] == "good"
        assert metadata["original_metadata"] == {"max_rpm": 8100}

    def test_custom_separator(self, reading, profile):
        adapter = ReadingFormatAdapter(OutputFormat.UMH, UNSConfig(umh_separator="/"))
        message = adapter.to_umh(reading, profile)

        assert message.topic == "umh/v1/acme/plant-a/machining/cell-01/cnc-001/_raw/spindle_speed"
        adapter.validate(message)

    def test_to_dict(self, adapter, reading, profile):
        envelope = adapter.to_umh(reading, profile).to_dict()
        assert set(envelope) == {"topic", "payload", "metadata"}


class TestAdapt:
    """Tests for schema selection."""

    def test_both_emits_two_messages(self, reading, profile):
        adapter = ReadingFormatAdapter(OutputFormat.BOTH)
        messages = adapter.adapt(reading, profile)

        assert [m.schema for m in messages] == [Schema.UNS, Schema.UMH]

    @pytest.mark.parametrize("fmt,schema", [(OutputFormat.UNS, Schema.UNS), (OutputFormat.UMH, Schema.UMH)])
    def test_single_schema(self, reading, profile, fmt, schema):
        messages = ReadingFormatAdapter(fmt).adapt(reading, profile)
        assert [m.schema for m in messages] == [schema]


class TestValidation:
    """Tests for wire message validation."""

    @pytest.fixture
    def adapter(self):
        return ReadingFormatAdapter(OutputFormat.BOTH)

    def test_valid_messages_pass(self, adapter, reading, profile):
        for message in adapter.adapt(reading, profile):
            adapter.validate(message)

    def test_missing_value(self, adapter, profile):
        bad = SensorReading("spindle-speed", None, "rpm", T0, "cnc-001")
        for message in adapter.adapt(bad, profile):
            with pytest.raises(ValidationError) as exc_info:
                adapter.validate(message)
            assert "Payload missing value" in exc_info.value.errors

    @pytest.mark.parametrize("timestamp", [math.nan, math.inf])
    def test_non_finite_timestamp(self, adapter, profile, timestamp):
        bad = SensorReading("spindle-speed", 1, "rpm", timestamp, "cnc-001")
        for message in adapter.adapt(bad, profile):
            with pytest.raises(ValidationError):
                adapter.validate(message)

    def test_non_finite_value(self, adapter, profile):
        bad = SensorReading("spindle-speed", math.nan, "rpm", T0, "cnc-001")
        for message in adapter.adapt(bad, profile):
            with pytest.raises(ValidationError):
                adapter.validate(message)

    def test_empty_key(self, adapter, profile):
        bad = SensorReading("", 1, "rpm", T0, "cnc-001")
        for message in adapter.adapt(bad, profile):
            with pytest.raises(ValidationError) as exc_info:
                adapter.validate(message)
            assert "Missing sensor key" in exc_info.value.errors

    def test_empty_location_path(self, adapter):
        message = WireMessage(
            topic="umh.v1.x._raw.t",
            payload={"value": 1, "timestamp_ms": 1},
            schema=Schema.UMH,
            location_path="",
            tag_name="t",
        )
        with pytest.raises(ValidationError) as exc_info:
            adapter.validate(message)
        assert "Missing location_path" in exc_info.value.errors

    def test_umh_prefix_required(self, adapter):
        message = WireMessage(
            topic="acme.plant-a._raw.t",
            payload={"value": 1, "timestamp_ms": 1},
            schema=Schema.UMH,
            location_path="acme.plant-a",
            tag_name="t",
        )
        with pytest.raises(ValidationError):
            adapter.validate(message)

    def test_adapt_valid_drops_and_counts(self, adapter, reading, profile):
        bad = SensorReading("vibration", None, "mm/s", T0, "cnc-001")
        messages, failures = adapter.adapt_valid([reading, bad], profile)

        assert len(messages) == 2
        assert len(failures) == 2
        assert all(isinstance(f, ValidationError) for f in failures)
