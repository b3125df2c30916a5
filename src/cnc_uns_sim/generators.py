"""Sensor value synthesis for CNC machines.

Every function here is pure given its arguments: the machine profile, the
engine's cycle and runtime state and the wall-clock `now`. Jitter comes from
`tick_noise`, seeded by machine, timestamp and sensor, so synthesizing the
same tick twice gives the same readings. Continuously varying signals add a
slow sinusoid (5-15s period) to a phase-dependent base so consecutive ticks
do not jump.

Sensor families per machine:
- sensors:    spindle-speed, spindle-load, position-{axis}, feedrate,
              vibration, temperature, current-tool, coolant-pressure,
              coolant-flow (coolant only when the machine has a coolant system)
- status:     operational, cycle-phase
- production: parts-count, efficiency
"""

import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .machines import AXIS_LABELS, LINEAR_AXES, MachineProfile, OperationalStatus
from .state import CycleState, Phase, RuntimeState, tool_for_progress

Value = Union[float, int, str, bool]

# Alarm thresholds
VIBRATION_WARNING = 3.0
VIBRATION_ALARM = 5.0
TEMPERATURE_WARNING = 75.0
TEMPERATURE_ALARM = 90.0
SPINDLE_LOAD_UNCERTAIN = 95.0
TOOL_WEAR_UNCERTAIN = 0.8
COOLANT_MIN_PRESSURE = 2.0
TARGET_EFFICIENCY = 75.0

POSITIONING_PHASES = (Phase.LOADING, Phase.UNLOADING)


class Quality(Enum):
    """Coarse validity classification of a value."""

    GOOD = "good"
    UNCERTAIN = "uncertain"
    BAD = "bad"


class Category(Enum):
    """Data category a sensor belongs to."""

    SENSORS = "sensors"
    STATUS = "status"
    PRODUCTION = "production"


@dataclass
class SensorReading:
    """One synthesized value for one sensor of one machine."""

    key: str
    value: Optional[Value]
    unit: str
    timestamp: float
    source: str
    category: Category = Category.SENSORS
    quality: Quality = Quality.GOOD
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp * 1000)

    @property
    def iso_timestamp(self) -> str:
        return (
            datetime.fromtimestamp(self.timestamp, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )


def oscillation(now: float, period_s: float, offset: float = 0.0) -> float:
    """Smooth wave in [-1, 1] with the given period."""
    return math.sin(2 * math.pi * now / period_s + offset)


def phase_draw(profile: MachineProfile, cycle: CycleState, salt: str) -> float:
    """Uniform [0, 1) value that stays fixed for the whole phase.

    Seeded from the machine and phase start, so the operating point of a
    machining phase is stable between ticks without extra engine state.
    """
    seed = f"{profile.machine_id}:{cycle.phase.value}:{cycle.start_time!r}:{salt}"
    return random.Random(seed).random()


def tick_noise(profile: MachineProfile, now: float, salt: str) -> float:
    """Uniform [0, 1) jitter for one sensor at one timestamp."""
    return random.Random(f"{profile.machine_id}:{now!r}:{salt}").random()


def _reading(
    profile: MachineProfile,
    key: str,
    value: Value,
    unit: str,
    now: float,
    quality: Quality = Quality.GOOD,
    category: Category = Category.SENSORS,
    **metadata: Any,
) -> SensorReading:
    return SensorReading(
        key=key,
        value=value,
        unit=unit,
        timestamp=now,
        source=profile.machine_id,
        category=category,
        quality=quality,
        metadata=metadata,
    )


# =============================================================================
# Spindle
# =============================================================================


def spindle_speed(profile: MachineProfile, cycle: CycleState, now: float) -> SensorReading:
    """Spindle speed: 30-90% of max (±10%) while machining, 10% positioning."""
    max_rpm = profile.capabilities.spindle_rpm_max

    if cycle.phase == Phase.MACHINING:
        base_rpm = max_rpm * (0.3 + phase_draw(profile, cycle, "rpm") * 0.6)
        rpm = base_rpm + oscillation(now, 10.0) * base_rpm * 0.1
    elif cycle.phase in POSITIONING_PHASES:
        rpm = max_rpm * 0.1
    else:
        rpm = 0.0

    return _reading(
        profile, "spindle-speed", max(0, round(rpm)), "rpm", now,
        max_rpm=max_rpm, phase=cycle.phase.value,
    )


def spindle_load(profile: MachineProfile, cycle: CycleState, now: float) -> SensorReading:
    """Spindle load %: 30-80% base with a ±20 swing while machining."""
    if cycle.phase == Phase.MACHINING:
        load = 30 + phase_draw(profile, cycle, "load") * 50 + oscillation(now, 15.0) * 20
    elif cycle.phase in POSITIONING_PHASES:
        load = 5 + tick_noise(profile, now, "load") * 10
    else:
        load = 0.0

    load = max(0.0, min(100.0, round(load, 1)))
    quality = Quality.UNCERTAIN if load > SPINDLE_LOAD_UNCERTAIN else Quality.GOOD
    return _reading(
        profile, "spindle-load", load, "percent", now, quality,
        power_rating_kw=profile.capabilities.spindle_power_kw,
        phase=cycle.phase.value,
    )


# =============================================================================
# Motion
# =============================================================================


def axis_position(
    profile: MachineProfile, cycle: CycleState, axis: str, now: float
) -> SensorReading:
    """Axis position: linear axes in mm within travel, rotary axes in degrees."""
    index = AXIS_LABELS.index(axis)
    travel = profile.capabilities.travel_for_axis(axis)
    rotary = index >= LINEAR_AXES

    if cycle.phase == Phase.MACHINING:
        position = travel / 2 + oscillation(now, 8.0, offset=index) * travel * 0.3
    elif cycle.phase in POSITIONING_PHASES:
        position = travel * 0.1 if index == 0 else travel * 0.5
    else:
        position = None  # home

    if position is None:
        value = 0.0
    elif rotary:
        value = position / travel * 360 - 180
    else:
        value = min(max(position, 0.0), travel)

    return _reading(
        profile, f"position-{axis}", round(value, 2), "degrees" if rotary else "mm", now,
        axis=axis.upper(), max_travel=360 if rotary else travel, phase=cycle.phase.value,
    )


def feedrate(
    profile: MachineProfile, cycle: CycleState, now: float
) -> SensorReading:
    rapid = profile.capabilities.rapid_traverse_mm_min

    if cycle.phase == Phase.MACHINING:
        rate = 100 + phase_draw(profile, cycle, "feed") * 1500 + oscillation(now, 12.0) * 300
    elif cycle.phase in POSITIONING_PHASES:
        rate = rapid * 0.1
    else:
        rate = 0.0

    return _reading(
        profile, "feedrate", max(0, round(rate)), "mm/min", now,
        rapid_traverse=rapid, phase=cycle.phase.value,
    )


# =============================================================================
# Condition monitoring
# =============================================================================


def vibration(
    profile: MachineProfile, cycle: CycleState, runtime: RuntimeState, now: float
) -> SensorReading:
    noise = tick_noise(profile, now, "vibration")
    level = runtime.vibration_baseline
    if cycle.phase == Phase.MACHINING:
        level += noise * 2.0 + oscillation(now, 6.0) * 0.5
    elif cycle.phase == Phase.ERROR:
        level += noise * 5.0
    else:
        level += noise * 0.2

    level = max(0.0, level)
    if level > VIBRATION_ALARM:
        quality = Quality.BAD
    elif level > VIBRATION_WARNING:
        quality = Quality.UNCERTAIN
    else:
        quality = Quality.GOOD

    return _reading(
        profile, "vibration", round(level, 2), "mm/s", now, quality,
        baseline=runtime.vibration_baseline,
        threshold_warning=VIBRATION_WARNING,
        threshold_alarm=VIBRATION_ALARM,
        phase=cycle.phase.value,
    )


def temperature(
    profile: MachineProfile, cycle: CycleState, runtime: RuntimeState, now: float
) -> SensorReading:
    noise = tick_noise(profile, now, "temperature")
    temp = runtime.temperature_baseline
    if cycle.phase == Phase.MACHINING:
        temp += noise * 20 + 10
    elif cycle.phase == Phase.ERROR:
        temp += noise * 30
    else:
        temp += noise * 5

    if temp > TEMPERATURE_ALARM:
        quality = Quality.BAD
    elif temp > TEMPERATURE_WARNING:
        quality = Quality.UNCERTAIN
    else:
        quality = Quality.GOOD

    return _reading(
        profile, "temperature", round(temp, 1), "celsius", now, quality,
        baseline=runtime.temperature_baseline,
        threshold_warning=TEMPERATURE_WARNING,
        threshold_alarm=TEMPERATURE_ALARM,
        phase=cycle.phase.value,
    )


def current_tool(
    profile: MachineProfile, cycle: CycleState, runtime: RuntimeState, now: float
) -> SensorReading:
    tool = 1
    if cycle.phase == Phase.MACHINING:
        tool = tool_for_progress(cycle.progress(now))

    wear = runtime.tool_wear(tool)
    quality = Quality.UNCERTAIN if wear > TOOL_WEAR_UNCERTAIN else Quality.GOOD
    return _reading(
        profile, "current-tool", tool, "tool_number", now, quality,
        tool_wear_percent=round(wear * 100),
        tool_life_remaining=round((1 - wear) * 100),
        phase=cycle.phase.value,
    )


def coolant_pressure(profile: MachineProfile, cycle: CycleState, now: float) -> SensorReading:
    noise = tick_noise(profile, now, "coolant-pressure")
    if cycle.phase == Phase.MACHINING:
        pressure = 3.5 + noise * 1.0 + oscillation(now, 5.0) * 0.2
    elif cycle.phase in POSITIONING_PHASES:
        pressure = 2.0 + noise * 0.5
    else:
        pressure = 0.5 + noise * 0.3  # standby

    quality = Quality.GOOD
    if cycle.phase == Phase.MACHINING and pressure < COOLANT_MIN_PRESSURE:
        quality = Quality.BAD

    return _reading(
        profile, "coolant-pressure", round(pressure, 1), "bar", now, quality,
        min_operating_pressure=COOLANT_MIN_PRESSURE,
        nominal_pressure=4.0,
        phase=cycle.phase.value,
    )


def coolant_flow(profile: MachineProfile, cycle: CycleState, now: float) -> SensorReading:
    noise = tick_noise(profile, now, "coolant-flow")
    if cycle.phase == Phase.MACHINING:
        flow = 15 + noise * 10 + oscillation(now, 7.0) * 3
    elif cycle.phase in POSITIONING_PHASES:
        flow = 5 + noise * 3  # chip clearing
    else:
        flow = 1 + noise * 2

    return _reading(
        profile, "coolant-flow", round(flow, 1), "L/min", now,
        nominal_flow=20, phase=cycle.phase.value,
    )


# =============================================================================
# Status and production
# =============================================================================

DETAILED_STATUS = {
    Phase.MACHINING: "running",
    Phase.LOADING: "setup",
    Phase.UNLOADING: "setup",
    Phase.IDLE: "idle",
    Phase.ERROR: "error",
    Phase.MAINTENANCE: "maintenance",
}

BASE_STATUS = {
    OperationalStatus.ACTIVE: "operational",
    OperationalStatus.UNDER_MAINTENANCE: "maintenance",
    OperationalStatus.UNREACHABLE: "offline",
}


def detailed_status(profile: MachineProfile, phase: Phase) -> str:
    """Human status word for a machine in a phase."""
    if profile.status != OperationalStatus.ACTIVE:
        return BASE_STATUS[profile.status]
    return DETAILED_STATUS[phase]


def operational_status(
    profile: MachineProfile, cycle: CycleState, runtime: RuntimeState, now: float
) -> SensorReading:
    return _reading(
        profile, "operational", detailed_status(profile, cycle.phase), "status", now,
        category=Category.STATUS,
        base_status=BASE_STATUS[profile.status],
        cycle_phase=cycle.phase.value,
        uptime_hours=round((now - runtime.created_at) / 3600),
    )


def cycle_phase(profile: MachineProfile, cycle: CycleState, now: float) -> SensorReading:
    elapsed = round(cycle.elapsed(now))
    bounded = not math.isinf(cycle.planned_duration)

    return _reading(
        profile, "cycle-phase", cycle.phase.value, "phase", now,
        category=Category.STATUS,
        elapsed_seconds=elapsed,
        remaining_seconds=round(cycle.remaining(now)) if bounded else None,
        total_duration=round(cycle.planned_duration) if bounded else None,
        progress_percent=round(cycle.progress(now) * 100),
    )


def parts_count(profile: MachineProfile, runtime: RuntimeState, now: float) -> SensorReading:
    runtime_hours = (now - runtime.created_at) / 3600
    per_hour = round(runtime.parts_produced / runtime_hours, 1) if runtime_hours > 0 else 0.0

    return _reading(
        profile, "parts-count", runtime.parts_produced, "parts", now,
        category=Category.PRODUCTION,
        shift_start=datetime.fromtimestamp(runtime.created_at, tz=timezone.utc).isoformat(),
        parts_per_hour=per_hour,
    )


def efficiency(
    profile: MachineProfile, cycle: CycleState, runtime: RuntimeState, now: float
) -> SensorReading:
    """Machining time over total runtime, capped at 100%."""
    total_runtime = now - runtime.created_at
    if total_runtime > 0:
        value = min(100.0, runtime.machining_seconds / total_runtime * 100)
    else:
        value = 0.0

    return _reading(
        profile, "efficiency", round(value, 1), "percent", now,
        category=Category.PRODUCTION,
        machining_time_seconds=round(runtime.machining_seconds),
        total_runtime_seconds=round(total_runtime),
        target_efficiency=TARGET_EFFICIENCY,
        current_phase=cycle.phase.value,
    )


def synthesize_readings(
    profile: MachineProfile,
    cycle: CycleState,
    runtime: RuntimeState,
    now: float,
) -> List[SensorReading]:
    """Build the full reading set of one machine for one tick."""
    readings = [
        spindle_speed(profile, cycle, now),
        spindle_load(profile, cycle, now),
    ]
    readings.extend(
        axis_position(profile, cycle, axis, now)
        for axis in profile.capabilities.axis_labels
    )
    readings.extend([
        feedrate(profile, cycle, now),
        vibration(profile, cycle, runtime, now),
        temperature(profile, cycle, runtime, now),
        current_tool(profile, cycle, runtime, now),
    ])
    if profile.capabilities.coolant_system:
        readings.append(coolant_pressure(profile, cycle, now))
        readings.append(coolant_flow(profile, cycle, now))

    readings.extend([
        operational_status(profile, cycle, runtime, now),
        cycle_phase(profile, cycle, now),
        parts_count(profile, runtime, now),
        efficiency(profile, cycle, runtime, now),
    ])
    return readings
