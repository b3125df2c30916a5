"""Per-machine operational cycle engine.

Phase state machine (a phase self-loops until its planned duration elapses):

    idle -> loading -> machining -> unloading -> idle        (85%)
                                              -> maintenance (10%) -> idle
                                              -> error       (5%)  -> idle

Machines classified `unreachable` park in idle forever; `under-maintenance`
machines start with a one hour maintenance phase.
"""

import logging
import math
import random
from typing import List, Optional

from .generators import SensorReading, synthesize_readings
from .machines import MachineProfile, OperationalStatus
from .state import PHASE_DURATIONS, CycleState, Phase, RuntimeState, tool_for_progress

logger = logging.getLogger(__name__)

INITIAL_MAINTENANCE_S = 3600.0
ERROR_PROBABILITY = 0.05
MAINTENANCE_PROBABILITY = 0.10


class MachineCycleEngine:
    """Owns one machine's phase state machine and runtime counters.

    The engine is only advanced through tick()/advance(); time never runs
    backwards for it, so a `now` older than the last tick is treated as the
    last tick.
    """

    def __init__(
        self,
        profile: MachineProfile,
        now: float,
        rng: Optional[random.Random] = None,
    ):
        self.profile = profile
        self._rng = rng or random.Random()
        self.runtime = RuntimeState.create(self._rng, now)
        self.cycle = self._initial_cycle(now)
        self._last_tick = now

    @property
    def machine_id(self) -> str:
        return self.profile.machine_id

    @property
    def phase(self) -> Phase:
        return self.cycle.phase

    @property
    def last_tick(self) -> float:
        return self._last_tick

    def _initial_cycle(self, now: float) -> CycleState:
        if self.profile.status == OperationalStatus.UNREACHABLE:
            return CycleState(Phase.IDLE, now, math.inf)
        if self.profile.status == OperationalStatus.UNDER_MAINTENANCE:
            return CycleState(Phase.MAINTENANCE, now, INITIAL_MAINTENANCE_S)
        return CycleState(Phase.IDLE, now, self._draw_duration(Phase.IDLE))

    def _draw_duration(self, phase: Phase) -> float:
        low, high = PHASE_DURATIONS[phase]
        return self._rng.uniform(low, high)

    def current_tool(self, now: float) -> int:
        if self.cycle.phase != Phase.MACHINING:
            return 1
        return tool_for_progress(self.cycle.progress(now))

    def tick(self, now: float) -> List[SensorReading]:
        """Advance the state machine to `now` and synthesize the readings."""
        now = self.advance(now)
        return synthesize_readings(self.profile, self.cycle, self.runtime, now)

    def advance(self, now: float) -> float:
        """Advance to `now`; returns the effective (non-decreasing) time.

        At most one transition fires per call, so repeated calls with the
        same `now` are idempotent.
        """
        now = max(now, self._last_tick)
        delta = now - self._last_tick

        # Wear and machining time accrue to the phase that was active
        # during the interval, before any transition.
        if self.cycle.phase == Phase.MACHINING and delta > 0:
            tool = self.current_tool(now)
            self.runtime.tool_seconds[tool] = self.runtime.tool_seconds.get(tool, 0.0) + delta
            self.runtime.machining_seconds += delta

        if self.cycle.is_complete(now):
            self._transition(now)

        self._last_tick = now
        return now

    def _transition(self, now: float) -> None:
        current = self.cycle.phase

        if current == Phase.IDLE:
            next_phase = Phase.LOADING
        elif current == Phase.LOADING:
            next_phase = Phase.MACHINING
        elif current == Phase.MACHINING:
            next_phase = Phase.UNLOADING
            self.runtime.parts_produced += 1
        elif current == Phase.UNLOADING:
            draw = self._rng.random()
            if draw < ERROR_PROBABILITY:
                next_phase = Phase.ERROR
            elif draw < ERROR_PROBABILITY + MAINTENANCE_PROBABILITY:
                next_phase = Phase.MAINTENANCE
            else:
                next_phase = Phase.IDLE
        else:
            # maintenance and error both recover to idle
            next_phase = Phase.IDLE

        self.cycle = CycleState(next_phase, now, self._draw_duration(next_phase))
        logger.debug(
            f"{self.machine_id}: {current.value} -> {next_phase.value} "
            f"({self.cycle.planned_duration:.0f}s planned)"
        )

    def set_phase(self, phase: Phase, planned_duration: float, now: float) -> None:
        """Force the engine into a phase (operator override and testing)."""
        now = max(now, self._last_tick)
        self.cycle = CycleState(phase, now, planned_duration)
        self._last_tick = now
