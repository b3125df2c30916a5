"""Conversion of sensor readings into wire messages.

Two schemas are supported:

UNS (hierarchical, rich payload):
    {prefix/}{enterprise}/{site}/{area}/{work_cell}/{machine}/info/{category}/{sensor-key}
    {"timestamp": ISO8601, "timestamp_ms": ..., "source": ..., "value": ...,
     "unit": ..., "quality": ..., "metadata": {...}}

UMH (compact, one tag one message):
    umh.v1.{enterprise}.{site}.{area}.{work_cell}.{machine}._raw.{sensor_key}
    {"value": ..., "timestamp_ms": ...}
    with location path, data contract, unit and quality carried out of band.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .config import UNSConfig
from .exceptions import ValidationError
from .generators import SensorReading
from .machines import MachineProfile

logger = logging.getLogger(__name__)


class Schema(Enum):
    """Wire schema of a message."""

    UNS = "uns"
    UMH = "umh"


class OutputFormat(Enum):
    """Which schema(s) the simulator publishes."""

    UNS = "uns"
    UMH = "umh"
    BOTH = "both"

    @property
    def schemas(self) -> List[Schema]:
        if self == OutputFormat.BOTH:
            return [Schema.UNS, Schema.UMH]
        return [Schema(self.value)]


@dataclass
class WireMessage:
    """A message ready for the sink."""

    topic: str
    payload: Dict[str, Any]
    schema: Schema
    location_path: str
    tag_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    qos: int = 1
    retain: bool = False

    @property
    def timestamp_ms(self) -> Any:
        return self.payload.get("timestamp_ms")

    def to_dict(self) -> Dict[str, Any]:
        """Envelope used by transports that carry out-of-band metadata."""
        envelope: Dict[str, Any] = {"topic": self.topic, "payload": self.payload}
        if self.metadata:
            envelope["metadata"] = self.metadata
        return envelope


def _is_finite_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def to_timestamp_ms(timestamp: Any) -> Any:
    """Millisecond epoch for a seconds epoch; non-finite input is passed through."""
    if _is_finite_number(timestamp):
        return int(timestamp * 1000)
    return timestamp


def hyphenate(key: str) -> str:
    return key.strip().lower().replace("_", "-")


def underscore(key: str) -> str:
    return key.strip().lower().replace("-", "_")


class ReadingFormatAdapter:
    """Stateless mapping from readings to wire messages of the active schema(s)."""

    def __init__(
        self,
        output_format: OutputFormat = OutputFormat.UNS,
        uns_config: Optional[UNSConfig] = None,
    ):
        self.output_format = output_format
        self.uns_config = uns_config or UNSConfig()

    @property
    def umh_prefix(self) -> str:
        sep = self.uns_config.umh_separator
        return sep.join(self.uns_config.umh_prefix.split("."))

    # -------------------------------------------------------------------------
    # Schema builders
    # -------------------------------------------------------------------------

    def to_uns(self, reading: SensorReading, profile: MachineProfile) -> WireMessage:
        location = "/".join(profile.location.segments)
        key = hyphenate(reading.key)
        parts = [location, profile.machine_id, "info", reading.category.value, key]
        if self.uns_config.uns_prefix:
            parts.insert(0, self.uns_config.uns_prefix)

        timestamp_ms = to_timestamp_ms(reading.timestamp)
        payload = {
            "timestamp": reading.iso_timestamp if _is_finite_number(reading.timestamp) else None,
            "timestamp_ms": timestamp_ms,
            "source": reading.source,
            "value": reading.value,
            "unit": reading.unit,
            "quality": reading.quality.value,
            "metadata": dict(reading.metadata),
        }
        return WireMessage(
            topic="/".join(parts) if key else "",
            payload=payload,
            schema=Schema.UNS,
            location_path=location,
            tag_name=key,
        )

    def to_umh(self, reading: SensorReading, profile: MachineProfile) -> WireMessage:
        sep = self.uns_config.umh_separator
        contract = self.uns_config.data_contract
        location = ".".join([*profile.location.segments, profile.machine_id])
        tag = underscore(reading.key)

        topic = ""
        if tag:
            topic = sep.join(
                [self.umh_prefix, *profile.location.segments, profile.machine_id, contract, tag]
            )

        return WireMessage(
            topic=topic,
            payload={"value": reading.value, "timestamp_ms": to_timestamp_ms(reading.timestamp)},
            schema=Schema.UMH,
            location_path=location,
            tag_name=tag,
            metadata={
                "location_path": location,
                "data_contract": contract,
                "tag_name": tag,
                "unit": reading.unit,
                "quality": reading.quality.value,
                "source": reading.source,
                "original_metadata": dict(reading.metadata),
            },
        )

    def adapt(self, reading: SensorReading, profile: MachineProfile) -> List[WireMessage]:
        """Convert one reading into one message per active schema (unvalidated)."""
        messages = []
        for schema in self.output_format.schemas:
            if schema == Schema.UNS:
                messages.append(self.to_uns(reading, profile))
            else:
                messages.append(self.to_umh(reading, profile))
        return messages

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, message: WireMessage) -> None:
        """Raise ValidationError if the message must not be published."""
        errors = []

        value = message.payload.get("value")
        if value is None:
            errors.append("Payload missing value")
        elif isinstance(value, float) and not math.isfinite(value):
            errors.append("Payload value is not a finite number")

        if not _is_finite_number(message.payload.get("timestamp_ms")):
            errors.append("Payload missing or invalid timestamp_ms")

        if not message.location_path:
            errors.append("Missing location_path")
        if not message.tag_name:
            errors.append("Missing sensor key")

        if not message.topic:
            errors.append("Missing topic")
        elif message.schema == Schema.UMH and not message.topic.startswith(
            self.umh_prefix + self.uns_config.umh_separator
        ):
            errors.append(f"Topic does not start with {self.umh_prefix}")

        if errors:
            raise ValidationError(errors, topic=message.topic)

    def adapt_valid(
        self, readings: List[SensorReading], profile: MachineProfile
    ) -> Tuple[List[WireMessage], List[ValidationError]]:
        """Adapt and validate readings; invalid messages are logged and dropped."""
        messages: List[WireMessage] = []
        failures: List[ValidationError] = []

        for reading in readings:
            for message in self.adapt(reading, profile):
                try:
                    self.validate(message)
                except ValidationError as e:
                    logger.warning(
                        f"Dropping invalid {message.schema.value} message for "
                        f"{profile.machine_id}/{reading.key}: {'; '.join(e.errors)}"
                    )
                    failures.append(e)
                    continue
                messages.append(message)

        return messages, failures
