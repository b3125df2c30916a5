"""Fleet simulator: drives every machine on a fixed cadence and publishes its readings.

Each tick:
    1. advance every reachable machine's cycle engine to `now`
    2. synthesize readings and adapt them to the active schema(s)
    3. publish all messages (or batches) concurrently and wait for them
    4. fold the outcome into the running metrics
"""

import logging
import random
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .adapter import OutputFormat, ReadingFormatAdapter, WireMessage
from .config import Config
from .cycle import MachineCycleEngine
from .exceptions import AlreadyRunningError, DeliveryError, NotRunningError
from .machines import MachineProfile, build_fleet, default_roster
from .publisher import PublisherClient, Sink

logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 10


@dataclass
class SimulationMetrics:
    """Point-in-time snapshot of the simulator's counters."""

    total_messages_published: int = 0
    messages_per_second: float = 0.0
    active_machines: int = 0
    uptime_seconds: float = 0.0
    recent_errors: List[str] = field(default_factory=list)
    batches_sent: int = 0
    validation_failures: int = 0
    failed_messages: int = 0
    ticks: int = 0
    skipped_ticks: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TickReport:
    """Outcome of a single tick."""

    timestamp: float
    machines: int = 0
    published: int = 0
    failed: int = 0
    invalid: int = 0
    batches: int = 0
    errors: List[str] = field(default_factory=list)


def roster_from_config(config: Config) -> List[MachineProfile]:
    """Explicit `machines:` list wins, then `machine_count`, then the default ten."""
    uns = config.uns
    if config.machines:
        return default_roster(uns.enterprise, uns.site, config.machines)
    if config.simulation.machine_count is not None:
        return build_fleet(
            config.simulation.machine_count,
            uns.enterprise,
            uns.site,
            seed=config.simulation.random_seed,
        )
    return default_roster(uns.enterprise, uns.site)


class Simulator:
    """Owns the fleet's cycle engines and the publish pipeline."""

    def __init__(
        self,
        profiles: List[MachineProfile],
        publisher: PublisherClient,
        adapter: Optional[ReadingFormatAdapter] = None,
        tick_interval_s: float = 3.0,
        batch_size: int = 1,
        clock: Callable[[], float] = time.time,
        seed: Optional[int] = None,
        publish_workers: int = 8,
        tick_workers: int = 2,
    ):
        if tick_interval_s <= 0:
            raise ValueError("tick_interval_s must be positive")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.publisher = publisher
        self.adapter = adapter or ReadingFormatAdapter()
        self.tick_interval_s = tick_interval_s
        self.batch_size = batch_size
        self.publish_workers = publish_workers
        self.tick_workers = tick_workers
        self._clock = clock

        rng = random.Random(seed)
        now = clock()
        self.engines: Dict[str, MachineCycleEngine] = {}
        for profile in profiles:
            if profile.machine_id in self.engines:
                raise ValueError(f"Duplicate machine id: {profile.machine_id}")
            self.engines[profile.machine_id] = MachineCycleEngine(
                profile, now, random.Random(rng.getrandbits(64))
            )

        self._running = False
        self._lifecycle_lock = threading.Lock()
        self._generation_lock = threading.Lock()
        self._metrics_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None
        self._tick_pool: Optional[ThreadPoolExecutor] = None
        self._publish_pool: Optional[ThreadPoolExecutor] = None

        self._started_at: Optional[float] = None
        self._active = sum(1 for p in profiles if not p.is_unreachable)
        self._errors: deque = deque(maxlen=MAX_RECENT_ERRORS)
        self._reset_counters()

    @classmethod
    def from_config(
        cls,
        config: Config,
        sink: Optional[Sink] = None,
        dry_run: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> "Simulator":
        """Assemble roster, sink, publisher and adapter from configuration."""
        sim = config.simulation
        sim.validate()
        profiles = roster_from_config(config)

        if sink is None:
            if sim.transport == "http":
                from .http_client import HTTPSink

                sink = HTTPSink(config.http)
            else:
                from .mqtt_client import MQTTSink

                sink = MQTTSink(config.mqtt, dry_run=dry_run)

        publisher = PublisherClient(
            sink,
            max_retries=sim.max_retries,
            base_delay_ms=sim.retry_base_delay_ms,
            max_delay_ms=sim.retry_max_delay_ms,
            jitter_pct=sim.retry_jitter_pct,
        )
        adapter = ReadingFormatAdapter(OutputFormat(sim.output_format), config.uns)

        return cls(
            profiles,
            publisher,
            adapter,
            tick_interval_s=sim.tick_interval_ms / 1000.0,
            batch_size=sim.batch_size,
            clock=clock,
            seed=sim.random_seed,
            publish_workers=sim.publish_workers,
            tick_workers=sim.tick_workers,
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def profiles(self) -> List[MachineProfile]:
        return [engine.profile for engine in self.engines.values()]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Connect the publisher and begin ticking.

        Raises AlreadyRunningError if already running; SinkConnectionError
        from the publisher propagates and leaves the simulator stopped.
        """
        with self._lifecycle_lock:
            if self._running:
                raise AlreadyRunningError("Simulator is already running")

            self.publisher.connect()

            self._tick_pool = ThreadPoolExecutor(
                max_workers=self.tick_workers, thread_name_prefix="cnc-tick"
            )
            self._publish_pool = ThreadPoolExecutor(
                max_workers=self.publish_workers, thread_name_prefix="cnc-publish"
            )
            with self._metrics_lock:
                self._reset_counters()
                self._started_at = self._clock()
            self._stop_event.clear()
            self._running = True

            self._timer_thread = threading.Thread(
                target=self._tick_loop, name="cnc-timer", daemon=True
            )
            self._timer_thread.start()

        logger.info(
            f"Simulator started: {len(self.engines)} machines, "
            f"tick every {self.tick_interval_s:g}s, format {self.adapter.output_format.value}"
        )

    def stop(self) -> None:
        """Stop ticking, drain in-flight work and disconnect. No-op when stopped."""
        with self._lifecycle_lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()

            if self._timer_thread and self._timer_thread is not threading.current_thread():
                self._timer_thread.join(timeout=self.tick_interval_s + 5)
            self._timer_thread = None

            if self._tick_pool:
                self._tick_pool.shutdown(wait=True, cancel_futures=True)
                self._tick_pool = None
            if self._publish_pool:
                self._publish_pool.shutdown(wait=True)
                self._publish_pool = None

            self.publisher.disconnect()

        logger.info("Simulator stopped")

    def _tick_loop(self) -> None:
        """Submit a tick every interval on a fixed cadence.

        The first tick fires one interval after start. Up to `tick_workers`
        ticks may overlap; when all of them are still busy the tick is
        skipped instead of queued, so a slow sink never builds a backlog.
        """
        pool = self._tick_pool
        next_at = time.monotonic() + self.tick_interval_s
        while not self._stop_event.wait(max(0.0, next_at - time.monotonic())):
            next_at += self.tick_interval_s
            if not self._claim_tick_slot():
                logger.warning(
                    f"Skipping tick: {self.tick_workers} tick(s) still in flight"
                )
                continue
            try:
                pool.submit(self._run_tick)
            except RuntimeError:
                # executor shut down underneath us
                self._release_tick_slot()
                break

    def _claim_tick_slot(self) -> bool:
        with self._metrics_lock:
            if self._in_flight >= self.tick_workers:
                self._skipped += 1
                return False
            self._in_flight += 1
            return True

    def _release_tick_slot(self) -> None:
        with self._metrics_lock:
            self._in_flight = max(0, self._in_flight - 1)

    def _run_tick(self) -> None:
        try:
            self.tick()
        except NotRunningError:
            pass
        except Exception as e:
            logger.error(f"Error in tick: {e}")
            self._record_errors([f"tick failed: {e}"])
        finally:
            self._release_tick_slot()

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> TickReport:
        """Run one generate, adapt and publish pass over the fleet."""
        if not self._running:
            raise NotRunningError("Simulator is not running")

        now = self._clock() if now is None else now
        report = TickReport(timestamp=now)
        messages: List[WireMessage] = []

        with self._generation_lock:
            for engine in self.engines.values():
                if engine.profile.is_unreachable:
                    continue
                report.machines += 1
                readings = engine.tick(now)
                valid, failures = self.adapter.adapt_valid(readings, engine.profile)
                messages.extend(valid)
                report.invalid += len(failures)

        for count, error in self._publish_all(messages):
            if error is None:
                report.published += count
                if self.batch_size > 1:
                    report.batches += 1
            else:
                report.failed += count
                report.errors.append(str(error))

        self._record(report)
        logger.debug(
            f"Tick: {report.machines} machines, {report.published} published, "
            f"{report.failed} failed, {report.invalid} invalid"
        )
        return report

    def _chunk(self, messages: List[WireMessage]) -> List[List[WireMessage]]:
        """Split messages into batches that never mix schemas."""
        by_schema: Dict[str, List[WireMessage]] = {}
        for message in messages:
            by_schema.setdefault(message.schema.value, []).append(message)

        chunks = []
        for group in by_schema.values():
            for i in range(0, len(group), self.batch_size):
                chunks.append(group[i:i + self.batch_size])
        return chunks

    def _publish_all(
        self, messages: List[WireMessage]
    ) -> List[Tuple[int, Optional[BaseException]]]:
        """Publish concurrently and wait for all; returns (message count, error) per unit."""
        if not messages:
            return []

        if self.batch_size > 1:
            units = [
                (len(chunk), lambda chunk=chunk: self.publisher.publish_batch(chunk))
                for chunk in self._chunk(messages)
            ]
        else:
            units = [
                (1, lambda message=message: self.publisher.publish(message))
                for message in messages
            ]

        pool = self._publish_pool
        if pool is None:
            raise NotRunningError("Simulator is not running")
        futures = [(count, pool.submit(send)) for count, send in units]
        wait([future for _, future in futures])

        outcomes = []
        for count, future in futures:
            error = future.exception()
            if error is None:
                outcomes.append((count, None))
            elif isinstance(error, DeliveryError):
                logger.warning(str(error))
                outcomes.append((count, error))
            else:
                logger.error(f"Unexpected publish failure: {error!r}")
                outcomes.append((count, error))
        return outcomes

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def _reset_counters(self) -> None:
        """Zero the per-run counters; a restart starts a fresh rate window."""
        self._published = 0
        self._batches = 0
        self._invalid = 0
        self._failed = 0
        self._ticks = 0
        self._skipped = 0
        self._in_flight = 0
        self._errors.clear()

    def _record(self, report: TickReport) -> None:
        with self._metrics_lock:
            self._ticks += 1
            self._active = report.machines
            self._published += report.published
            self._failed += report.failed
            self._invalid += report.invalid
            self._batches += report.batches
            self._errors.extend(report.errors)

    def _record_errors(self, errors: List[str]) -> None:
        with self._metrics_lock:
            self._errors.extend(errors)

    def metrics(self) -> SimulationMetrics:
        """Snapshot of the current metrics."""
        with self._metrics_lock:
            uptime = 0.0
            if self._started_at is not None:
                uptime = max(0.0, self._clock() - self._started_at)
            rate = round(self._published / uptime, 2) if uptime > 0 else 0.0
            return SimulationMetrics(
                total_messages_published=self._published,
                messages_per_second=rate,
                active_machines=self._active,
                uptime_seconds=uptime,
                recent_errors=list(self._errors),
                batches_sent=self._batches,
                validation_failures=self._invalid,
                failed_messages=self._failed,
                ticks=self._ticks,
                skipped_ticks=self._skipped,
            )
