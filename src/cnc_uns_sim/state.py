"""Phase and runtime state owned by a machine's cycle engine."""

import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple


class Phase(Enum):
    """Operational cycle phases."""

    IDLE = "idle"
    LOADING = "loading"
    MACHINING = "machining"
    UNLOADING = "unloading"
    MAINTENANCE = "maintenance"
    ERROR = "error"


# Planned duration ranges (seconds) for a freshly entered phase
PHASE_DURATIONS: Dict[Phase, Tuple[float, float]] = {
    Phase.IDLE: (60, 360),
    Phase.LOADING: (30, 150),
    Phase.MACHINING: (600, 2400),
    Phase.UNLOADING: (15, 75),
    Phase.MAINTENANCE: (900, 4500),
    Phase.ERROR: (300, 900),
}

TOOL_COUNT = 20
TOOLS_PER_CYCLE = 5
MAX_INITIAL_WEAR = 0.3
# Machining seconds that take a tool from new to fully worn
TOOL_LIFE_S = 4 * 3600.0


@dataclass
class CycleState:
    """The single active phase of a machine."""

    phase: Phase
    start_time: float
    planned_duration: float

    def elapsed(self, now: float) -> float:
        return max(0.0, now - self.start_time)

    def remaining(self, now: float) -> float:
        return max(0.0, self.planned_duration - self.elapsed(now))

    def progress(self, now: float) -> float:
        """Fraction of the planned duration elapsed (0 for unbounded phases)."""
        if math.isinf(self.planned_duration) or self.planned_duration <= 0:
            return 0.0
        return self.elapsed(now) / self.planned_duration

    def is_complete(self, now: float) -> bool:
        return self.elapsed(now) >= self.planned_duration


@dataclass
class RuntimeState:
    """Counters and fixed random baselines owned by one engine."""

    created_at: float
    vibration_baseline: float
    temperature_baseline: float
    initial_wear: Dict[int, float] = field(default_factory=dict)
    tool_seconds: Dict[int, float] = field(default_factory=dict)
    parts_produced: int = 0
    machining_seconds: float = 0.0

    @classmethod
    def create(cls, rng: random.Random, now: float) -> "RuntimeState":
        """Draw the per-machine baselines once."""
        return cls(
            created_at=now,
            vibration_baseline=rng.uniform(0.1, 0.6),  # mm/s
            temperature_baseline=rng.uniform(45.0, 55.0),  # °C
            initial_wear={
                tool: rng.uniform(0.0, MAX_INITIAL_WEAR)
                for tool in range(1, TOOL_COUNT + 1)
            },
        )

    def tool_wear(self, tool: int) -> float:
        """Wear fraction of a tool: initial wear plus linear machining wear."""
        wear = self.initial_wear.get(tool, 0.0)
        wear += self.tool_seconds.get(tool, 0.0) / TOOL_LIFE_S
        return min(1.0, wear)

    @property
    def wear_map(self) -> Dict[int, float]:
        return {tool: self.tool_wear(tool) for tool in self.initial_wear}


def tool_for_progress(progress: float) -> int:
    """Tool in use at a given machining progress fraction (tools 1-5)."""
    clamped = min(max(progress, 0.0), 0.999)
    return int(math.floor(clamped * TOOLS_PER_CYCLE)) + 1
