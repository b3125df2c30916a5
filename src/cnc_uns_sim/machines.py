"""Machine profiles and the default CNC fleet roster.

Each profile is immutable for the lifetime of the process. The location
hierarchy follows ISA-95:

    {enterprise}/{site}/{area}/{work_cell}/{machine_id}

Default fleet (10 machines):
- machining:  Haas VF-2 #1/#2, Doosan DNM 500
- turning:    DMG Mori NLX2500 #1/#2, Okuma Genos L250-E
- multi-axis: Mazak Integrex i-300 #1/#2 (#2 under maintenance)
- precision:  Fanuc Robodrill, Mori Seiki NV5000 DCG (unreachable)
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from faker import Faker

AXIS_LABELS = ("x", "y", "z", "a", "b", "c")
LINEAR_AXES = 3


class OperationalStatus(Enum):
    """Static operational classification of a machine."""

    ACTIVE = "active"
    UNDER_MAINTENANCE = "under-maintenance"
    UNREACHABLE = "unreachable"

    @classmethod
    def parse(cls, value: str) -> "OperationalStatus":
        """Parse a status, accepting the legacy roster vocabulary."""
        aliases = {
            "operational": cls.ACTIVE,
            "maintenance": cls.UNDER_MAINTENANCE,
            "offline": cls.UNREACHABLE,
        }
        normalized = value.strip().lower().replace("_", "-")
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


@dataclass(frozen=True)
class LocationPath:
    """Ordered location hierarchy of a machine."""

    enterprise: str
    site: str
    area: str
    work_cell: str

    def __post_init__(self):
        for name in ("enterprise", "site", "area", "work_cell"):
            if not getattr(self, name):
                raise ValueError(f"Location segment '{name}' must not be empty")

    @property
    def segments(self) -> Tuple[str, str, str, str]:
        return (self.enterprise, self.site, self.area, self.work_cell)


@dataclass(frozen=True)
class MachineCapabilities:
    """What a machine can physically do."""

    spindle_rpm_max: float
    axes: int
    spindle_power_kw: float
    rapid_traverse_mm_min: float
    work_envelope_mm: Tuple[float, ...]
    tool_changer: bool = True
    simultaneous_axes: int = 3
    coolant_system: bool = True

    def __post_init__(self):
        if not 2 <= self.axes <= 6:
            raise ValueError(f"Axis count must be between 2 and 6, got {self.axes}")
        if self.spindle_rpm_max <= 0:
            raise ValueError("spindle_rpm_max must be positive")

    @property
    def axis_labels(self) -> Tuple[str, ...]:
        return AXIS_LABELS[: self.axes]

    def travel_for_axis(self, axis: str) -> float:
        """Travel of a linear axis in mm (100 when the envelope has no entry)."""
        index = AXIS_LABELS.index(axis.lower())
        if index < len(self.work_envelope_mm):
            return self.work_envelope_mm[index]
        return 100.0


@dataclass(frozen=True)
class MachineProfile:
    """Immutable identity, location and capabilities of one machine."""

    machine_id: str
    display_name: str
    location: LocationPath
    capabilities: MachineCapabilities
    status: OperationalStatus = OperationalStatus.ACTIVE
    manufacturer: str = ""
    model: str = ""
    serial_number: str = ""

    def __post_init__(self):
        if not self.machine_id:
            raise ValueError("machine_id must not be empty")

    @property
    def is_unreachable(self) -> bool:
        return self.status == OperationalStatus.UNREACHABLE

    def to_meta_dict(self) -> Dict[str, Any]:
        """Descriptive metadata for the machine."""
        caps = self.capabilities
        return {
            "machine_id": self.machine_id,
            "display_name": self.display_name,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "serial_number": self.serial_number,
            "status": self.status.value,
            "location": {
                "enterprise": self.location.enterprise,
                "site": self.location.site,
                "area": self.location.area,
                "work_cell": self.location.work_cell,
            },
            "capabilities": {
                "spindle_rpm_max": caps.spindle_rpm_max,
                "axes": caps.axes,
                "tool_changer": caps.tool_changer,
                "simultaneous_axes": caps.simultaneous_axes,
                "coolant_system": caps.coolant_system,
            },
            "specifications": {
                "spindle_power_kw": caps.spindle_power_kw,
                "rapid_traverse_mm_min": caps.rapid_traverse_mm_min,
                "work_envelope": format_envelope(caps.work_envelope_mm),
            },
        }


def parse_envelope(envelope: str) -> Tuple[float, ...]:
    """Parse a work envelope like '762x406x508' into per-axis travels."""
    try:
        return tuple(float(part) for part in envelope.lower().split("x"))
    except ValueError as e:
        raise ValueError(f"Invalid work envelope '{envelope}'") from e


def format_envelope(dimensions: Tuple[float, ...]) -> str:
    return "x".join(f"{d:g}" for d in dimensions)


# =============================================================================
# Default roster
# =============================================================================

# Machine templates (location enterprise/site filled in at build time)
DEFAULT_MACHINES: List[Dict[str, Any]] = [
    {
        "machine_id": "cnc-001", "display_name": "Haas VF-2 Mill #1",
        "manufacturer": "Haas", "model": "VF-2",
        "area": "machining", "work_cell": "cell-01", "status": "active",
        "spindle_rpm_max": 8100, "axes": 3, "simultaneous_axes": 3,
        "spindle_power_kw": 15, "rapid_traverse_mm_min": 25400,
        "work_envelope": "762x406x508",
    },
    {
        "machine_id": "cnc-002", "display_name": "Haas VF-2 Mill #2",
        "manufacturer": "Haas", "model": "VF-2",
        "area": "machining", "work_cell": "cell-01", "status": "active",
        "spindle_rpm_max": 8100, "axes": 3, "simultaneous_axes": 3,
        "spindle_power_kw": 15, "rapid_traverse_mm_min": 25400,
        "work_envelope": "762x406x508",
    },
    {
        "machine_id": "cnc-003", "display_name": "DMG Mori NLX2500 Lathe #1",
        "manufacturer": "DMG Mori", "model": "NLX2500",
        "area": "turning", "work_cell": "cell-02", "status": "active",
        "spindle_rpm_max": 4500, "axes": 2, "simultaneous_axes": 2,
        "spindle_power_kw": 22, "rapid_traverse_mm_min": 30000,
        "work_envelope": "400x800x350",
    },
    {
        "machine_id": "cnc-004", "display_name": "DMG Mori NLX2500 Lathe #2",
        "manufacturer": "DMG Mori", "model": "NLX2500",
        "area": "turning", "work_cell": "cell-02", "status": "active",
        "spindle_rpm_max": 4500, "axes": 2, "simultaneous_axes": 2,
        "spindle_power_kw": 22, "rapid_traverse_mm_min": 30000,
        "work_envelope": "400x800x350",
    },
    {
        "machine_id": "cnc-005", "display_name": "Mazak Integrex i-300 Multi-Axis #1",
        "manufacturer": "Mazak", "model": "Integrex i-300",
        "area": "multi-axis", "work_cell": "cell-03", "status": "active",
        "spindle_rpm_max": 6000, "axes": 5, "simultaneous_axes": 5,
        "spindle_power_kw": 30, "rapid_traverse_mm_min": 36000,
        "work_envelope": "500x850x450",
    },
    {
        "machine_id": "cnc-006", "display_name": "Mazak Integrex i-300 Multi-Axis #2",
        "manufacturer": "Mazak", "model": "Integrex i-300",
        "area": "multi-axis", "work_cell": "cell-03", "status": "under-maintenance",
        "spindle_rpm_max": 6000, "axes": 5, "simultaneous_axes": 5,
        "spindle_power_kw": 30, "rapid_traverse_mm_min": 36000,
        "work_envelope": "500x850x450",
    },
    {
        "machine_id": "cnc-007", "display_name": "Okuma Genos L250-E Lathe",
        "manufacturer": "Okuma", "model": "Genos L250-E",
        "area": "turning", "work_cell": "cell-04", "status": "active",
        "spindle_rpm_max": 5000, "axes": 2, "simultaneous_axes": 2,
        "spindle_power_kw": 18.5, "rapid_traverse_mm_min": 24000,
        "work_envelope": "350x780x300",
    },
    {
        "machine_id": "cnc-008", "display_name": "Doosan DNM 500 Mill",
        "manufacturer": "Doosan", "model": "DNM 500",
        "area": "machining", "work_cell": "cell-05", "status": "active",
        "spindle_rpm_max": 12000, "axes": 3, "simultaneous_axes": 3,
        "spindle_power_kw": 11, "rapid_traverse_mm_min": 36000,
        "work_envelope": "500x400x330",
    },
    {
        "machine_id": "cnc-009", "display_name": "Fanuc Robodrill α-T14iE Mill",
        "manufacturer": "Fanuc", "model": "Robodrill α-T14iE",
        "area": "precision", "work_cell": "cell-06", "status": "active",
        "spindle_rpm_max": 24000, "axes": 3, "simultaneous_axes": 3,
        "spindle_power_kw": 7.5, "rapid_traverse_mm_min": 60000,
        "work_envelope": "350x250x220",
    },
    {
        "machine_id": "cnc-010", "display_name": "Mori Seiki NV5000 DCG Mill",
        "manufacturer": "Mori Seiki", "model": "NV5000 DCG",
        "area": "precision", "work_cell": "cell-06", "status": "unreachable",
        "spindle_rpm_max": 15000, "axes": 5, "simultaneous_axes": 5,
        "spindle_power_kw": 22, "rapid_traverse_mm_min": 50000,
        "work_envelope": "560x510x460",
    },
]


def profile_from_dict(data: Dict[str, Any], enterprise: str, site: str) -> MachineProfile:
    """Build a profile from a flat roster entry (as used in YAML configs)."""
    envelope = data.get("work_envelope", "100x100x100")
    if isinstance(envelope, str):
        envelope = parse_envelope(envelope)

    return MachineProfile(
        machine_id=data["machine_id"],
        display_name=data.get("display_name", data["machine_id"]),
        manufacturer=data.get("manufacturer", ""),
        model=data.get("model", ""),
        serial_number=data.get("serial_number", ""),
        status=OperationalStatus.parse(data.get("status", "active")),
        location=LocationPath(
            enterprise=data.get("enterprise", enterprise),
            site=data.get("site", site),
            area=data["area"],
            work_cell=data["work_cell"],
        ),
        capabilities=MachineCapabilities(
            spindle_rpm_max=float(data["spindle_rpm_max"]),
            axes=int(data["axes"]),
            spindle_power_kw=float(data.get("spindle_power_kw", 10.0)),
            rapid_traverse_mm_min=float(data.get("rapid_traverse_mm_min", 20000.0)),
            work_envelope_mm=tuple(envelope),
            tool_changer=bool(data.get("tool_changer", True)),
            simultaneous_axes=int(data.get("simultaneous_axes", data["axes"])),
            coolant_system=bool(data.get("coolant_system", True)),
        ),
    )


def default_roster(
    enterprise: str = "demo-factory",
    site: str = "plant1",
    machines: Optional[List[Dict[str, Any]]] = None,
) -> List[MachineProfile]:
    """Build the roster, placing every machine under enterprise/site."""
    entries = machines if machines is not None else DEFAULT_MACHINES
    return [profile_from_dict(entry, enterprise, site) for entry in entries]


def build_fleet(
    count: int,
    enterprise: str = "demo-factory",
    site: str = "plant1",
    seed: Optional[int] = None,
) -> List[MachineProfile]:
    """Build a fleet of `count` machines by cycling the default templates.

    The first ten machines are the default roster. Additional machines get
    sequential ids (cnc-011, ...) and a generated serial number; their
    classification is always `active`.
    """
    if count < 0:
        raise ValueError("Fleet size must not be negative")

    fake = Faker()
    if seed is not None:
        fake.seed_instance(seed)

    templates = default_roster(enterprise, site)
    fleet: List[MachineProfile] = []
    for i in range(count):
        template = templates[i % len(templates)]
        serial = fake.bothify(text="SN-####-????").upper()
        if i < len(templates):
            fleet.append(replace(template, serial_number=serial))
            continue
        copy_no = i // len(templates) + 1
        fleet.append(
            replace(
                template,
                machine_id=f"cnc-{i + 1:03d}",
                display_name=f"{template.display_name} (unit {copy_no})",
                status=OperationalStatus.ACTIVE,
                serial_number=serial,
            )
        )
    return fleet
