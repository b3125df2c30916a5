"""Tests for the fleet Simulator."""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from cnc_uns_sim.adapter import OutputFormat, ReadingFormatAdapter, Schema
from cnc_uns_sim.config import Config
from cnc_uns_sim.exceptions import (
    AlreadyRunningError,
    DeliveryError,
    NotRunningError,
    SinkConnectionError,
    ValidationError,
)
from cnc_uns_sim.http_client import HTTPSink
from cnc_uns_sim.machines import default_roster
from cnc_uns_sim.mqtt_client import MQTTSink
from cnc_uns_sim.publisher import PublisherClient, Sink
from cnc_uns_sim.simulator import MAX_RECENT_ERRORS, Simulator

T0 = 1_700_000_000.0

# Readings per tick for the default roster (cnc-010 is unreachable):
# 3-axis mills 15 each (x4), lathes 14 each (x3), 5-axis 17 each (x2)
MESSAGES_PER_TICK = 4 * 15 + 3 * 14 + 2 * 17


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now


def published_messages(sink):
    return [c.args[0] for c in sink.publish.call_args_list]


class TestSimulatorLifecycle:
    """Tests for start/stop guards."""

    @pytest.fixture
    def sink(self):
        return MagicMock(spec=Sink)

    @pytest.fixture
    def simulator(self, sink):
        publisher = PublisherClient(sink, sleep=lambda s: None)
        sim = Simulator(default_roster(), publisher, tick_interval_s=3600, clock=FakeClock(), seed=1)
        yield sim
        sim.stop()

    def test_start_connects(self, simulator, sink):
        simulator.start()

        sink.connect.assert_called_once()
        assert simulator.running is True

    def test_double_start_raises(self, simulator, sink):
        simulator.start()

        with pytest.raises(AlreadyRunningError):
            simulator.start()

        timers = [t for t in threading.enumerate() if t.name == "cnc-timer"]
        assert len(timers) == 1
        sink.connect.assert_called_once()

    def test_stop_is_idempotent(self, simulator, sink):
        simulator.stop()
        sink.disconnect.assert_not_called()

        simulator.start()
        simulator.stop()
        simulator.stop()

        sink.disconnect.assert_called_once()
        assert simulator.running is False

    def test_restart_after_stop(self, simulator, sink):
        simulator.start()
        simulator.stop()
        simulator.start()

        assert simulator.running is True
        assert sink.connect.call_count == 2

    def test_restart_starts_fresh_counters(self, sink):
        clock = FakeClock()
        sim = Simulator(
            default_roster(), PublisherClient(sink, sleep=lambda s: None),
            tick_interval_s=3600, clock=clock, seed=1,
        )
        sim.start()
        clock.now += 10
        sim.tick()
        sim.stop()

        clock.now += 100
        sim.start()
        try:
            assert sim.metrics().total_messages_published == 0
            assert sim.metrics().ticks == 0

            clock.now += 10
            sim.tick()
            metrics = sim.metrics()
        finally:
            sim.stop()

        assert metrics.total_messages_published == MESSAGES_PER_TICK
        assert metrics.uptime_seconds == 10
        assert metrics.messages_per_second == round(MESSAGES_PER_TICK / 10, 2)

    def test_connection_failure_is_fatal(self, simulator, sink):
        sink.connect.side_effect = SinkConnectionError("broker unreachable")

        with pytest.raises(SinkConnectionError):
            simulator.start()

        assert simulator.running is False
        assert not [t for t in threading.enumerate() if t.name == "cnc-timer"]

    def test_tick_requires_running(self, simulator):
        with pytest.raises(NotRunningError):
            simulator.tick()

    def test_duplicate_machine_ids(self, sink):
        roster = default_roster()
        with pytest.raises(ValueError):
            Simulator(roster + roster[:1], PublisherClient(sink))


class TestSimulatorTick:
    """Tests for a single tick."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def sink(self):
        return MagicMock(spec=Sink)

    def make_simulator(self, sink, clock, **kwargs):
        publisher = PublisherClient(sink, sleep=lambda s: None)
        adapter = ReadingFormatAdapter(kwargs.pop("output_format", OutputFormat.UNS))
        return Simulator(
            default_roster("acme", "plant-a"),
            publisher,
            adapter,
            tick_interval_s=3600,
            clock=clock,
            seed=kwargs.pop("seed", 1),
            **kwargs,
        )

    @pytest.fixture
    def simulator(self, sink, clock):
        sim = self.make_simulator(sink, clock)
        sim.start()
        yield sim
        sim.stop()

    def test_tick_publishes_every_reachable_machine(self, simulator, sink, clock):
        clock.now += 3
        report = simulator.tick()

        assert report.machines == 9
        assert report.published == MESSAGES_PER_TICK
        assert sink.publish.call_count == MESSAGES_PER_TICK

        sources = {m.payload["source"] for m in published_messages(sink)}
        assert len(sources) == 9
        assert "cnc-010" not in sources

    def test_metrics_after_tick(self, simulator, clock):
        clock.now += 10
        simulator.tick()

        metrics = simulator.metrics()
        assert metrics.active_machines == 9
        assert metrics.total_messages_published == MESSAGES_PER_TICK
        assert metrics.uptime_seconds == 10
        assert metrics.messages_per_second == round(MESSAGES_PER_TICK / 10, 2)
        assert metrics.ticks == 1
        assert metrics.recent_errors == []

    def test_metrics_to_dict(self, simulator):
        data = simulator.metrics().to_dict()
        assert data["active_machines"] == 9
        assert data["total_messages_published"] == 0
        assert data["messages_per_second"] == 0.0

    def test_explicit_now_used_for_timestamps(self, simulator, sink):
        simulator.tick(now=T0 + 30)

        stamps = {m.payload["timestamp_ms"] for m in published_messages(sink)}
        assert stamps == {int((T0 + 30) * 1000)}

    def test_timestamps_never_go_backwards(self, simulator, sink):
        simulator.tick(now=T0 + 30)
        first = max(m.payload["timestamp_ms"] for m in published_messages(sink))
        sink.publish.reset_mock()

        simulator.tick(now=T0 + 20)
        second = min(m.payload["timestamp_ms"] for m in published_messages(sink))

        assert second >= first

    def test_delivery_failures_do_not_halt_tick(self, simulator, sink):
        def flaky(message):
            if message.payload["source"] == "cnc-001":
                raise DeliveryError(message.topic, RuntimeError("broker busy"))

        sink.publish.side_effect = flaky

        report = simulator.tick(now=T0 + 3)

        assert report.failed == 15
        assert report.published == MESSAGES_PER_TICK - 15
        metrics = simulator.metrics()
        assert metrics.failed_messages == 15
        assert len(metrics.recent_errors) == MAX_RECENT_ERRORS
        assert all("broker busy" in e for e in metrics.recent_errors)
        # each failing message was attempted max_retries times
        assert sink.publish.call_count == MESSAGES_PER_TICK - 15 + 15 * 3

    def test_unexpected_sink_errors_are_recorded(self, simulator, sink):
        sink.publish.side_effect = RuntimeError("socket closed")

        report = simulator.tick(now=T0 + 3)

        assert report.published == 0
        assert report.failed == MESSAGES_PER_TICK
        assert simulator.running is True

    def test_recent_errors_are_bounded(self, simulator, sink):
        sink.publish.side_effect = DeliveryError("t", RuntimeError("down"))

        for i in range(3):
            simulator.tick(now=T0 + i)

        assert len(simulator.metrics().recent_errors) == MAX_RECENT_ERRORS

    def test_validation_failures_counted(self, simulator, sink, monkeypatch):
        original = simulator.adapter.validate

        def reject_feedrate(message):
            if message.tag_name == "feedrate":
                raise ValidationError(["Payload missing value"], message.topic)
            original(message)

        monkeypatch.setattr(simulator.adapter, "validate", reject_feedrate)

        report = simulator.tick(now=T0 + 3)

        assert report.invalid == 9
        assert report.published == MESSAGES_PER_TICK - 9
        assert simulator.metrics().validation_failures == 9

    def test_both_formats(self, sink, clock):
        sim = self.make_simulator(sink, clock, output_format=OutputFormat.BOTH)
        sim.start()
        try:
            report = sim.tick(now=T0 + 3)
        finally:
            sim.stop()

        assert report.published == 2 * MESSAGES_PER_TICK
        schemas = [m.schema for m in published_messages(sink)]
        assert schemas.count(Schema.UNS) == schemas.count(Schema.UMH) == MESSAGES_PER_TICK

    def test_batches_never_mix_schemas(self, sink, clock):
        sim = self.make_simulator(sink, clock, output_format=OutputFormat.BOTH, batch_size=50)
        sim.start()
        try:
            report = sim.tick(now=T0 + 3)
        finally:
            sim.stop()

        batches = [c.args[0] for c in sink.publish_batch.call_args_list]
        # 136 messages per schema -> 3 batches each
        assert len(batches) == 6
        assert all(len({m.schema for m in batch}) == 1 for batch in batches)
        assert all(len(batch) <= 50 for batch in batches)
        assert sum(len(batch) for batch in batches) == 2 * MESSAGES_PER_TICK
        sink.publish.assert_not_called()
        assert report.batches == 6
        assert sim.metrics().batches_sent == 6

    def test_failed_batch_counts_all_messages(self, sink, clock):
        sink.publish_batch.side_effect = DeliveryError("batch", RuntimeError("503"))
        sim = self.make_simulator(sink, clock, batch_size=200)
        sim.start()
        try:
            report = sim.tick(now=T0 + 3)
        finally:
            sim.stop()

        assert report.failed == MESSAGES_PER_TICK
        assert report.batches == 0

    def test_seeded_runs_are_reproducible(self):
        runs = []
        for _ in range(2):
            sink = MagicMock(spec=Sink)
            sim = self.make_simulator(sink, FakeClock(), seed=99)
            sim.start()
            try:
                for i in range(1, 4):
                    sim.tick(now=T0 + i * 300)
            finally:
                sim.stop()
            runs.append(sorted(
                (m.topic, json.dumps(m.payload, sort_keys=True)) for m in published_messages(sink)
            ))

        assert runs[0] == runs[1]


class TestSimulatorTimer:
    """Tests for the periodic tick loop."""

    def test_ticks_periodically(self):
        sink = MagicMock(spec=Sink)
        sim = Simulator(default_roster(), PublisherClient(sink), tick_interval_s=0.05, seed=1)
        sim.start()
        try:
            deadline = time.monotonic() + 5
            while sim.metrics().ticks < 3 and time.monotonic() < deadline:
                time.sleep(0.02)
        finally:
            sim.stop()

        assert sim.metrics().ticks >= 3
        assert sink.publish.call_count >= 3 * MESSAGES_PER_TICK

    def test_stop_halts_ticking(self):
        sink = MagicMock(spec=Sink)
        sim = Simulator(default_roster(), PublisherClient(sink), tick_interval_s=0.05, seed=1)
        sim.start()
        time.sleep(0.12)
        sim.stop()

        ticks = sim.metrics().ticks
        time.sleep(0.15)
        assert sim.metrics().ticks == ticks

    def test_busy_ticks_are_skipped_not_queued(self):
        release = threading.Event()
        sink = MagicMock(spec=Sink)

        def slow_failure(message):
            release.wait(5)
            raise DeliveryError(message.topic, RuntimeError("broker down"))

        sink.publish.side_effect = slow_failure
        sim = Simulator(
            default_roster(), PublisherClient(sink, sleep=lambda s: None),
            tick_interval_s=0.05, seed=1, tick_workers=1, publish_workers=2,
        )
        sim.start()
        try:
            deadline = time.monotonic() + 5
            while sim.metrics().skipped_ticks < 5 and time.monotonic() < deadline:
                time.sleep(0.02)
            backlog = sim._tick_pool._work_queue.qsize()
        finally:
            release.set()
            sim.stop()

        assert sim.metrics().skipped_ticks >= 5
        assert backlog == 0
        assert sim.running is False


class TestFromConfig:
    """Tests for building a simulator from configuration."""

    def test_default_roster(self):
        sim = Simulator.from_config(Config.default(), dry_run=True)

        assert len(sim.engines) == 10
        assert isinstance(sim.publisher.sink, MQTTSink)
        assert sim.publisher.sink.dry_run is True
        assert sim.tick_interval_s == 3.0

    def test_machine_count(self):
        config = Config.default()
        config.simulation.machine_count = 14
        config.simulation.random_seed = 3

        sim = Simulator.from_config(config, dry_run=True)

        assert len(sim.engines) == 14
        assert "cnc-014" in sim.engines

    def test_http_transport(self):
        config = Config.default()
        config.simulation.transport = "http"

        sim = Simulator.from_config(config)

        assert isinstance(sim.publisher.sink, HTTPSink)

    def test_output_format_and_identity(self):
        config = Config.default()
        config.simulation.output_format = "umh"
        config.uns.enterprise = "acme"

        sim = Simulator.from_config(config, dry_run=True)

        assert sim.adapter.output_format == OutputFormat.UMH
        assert all(p.location.enterprise == "acme" for p in sim.profiles)

    def test_dry_run_end_to_end(self):
        config = Config.default()
        config.simulation.output_format = "both"
        clock = FakeClock()
        sim = Simulator.from_config(config, dry_run=True, clock=clock)
        sim.start()
        try:
            clock.now += 3
            report = sim.tick()
        finally:
            sim.stop()

        assert report.published == 2 * MESSAGES_PER_TICK
        assert sim.publisher.sink.messages_published == 2 * MESSAGES_PER_TICK
