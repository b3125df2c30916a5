"""Configuration management for the simulator."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml

OUTPUT_FORMATS = ("uns", "umh", "both")
TRANSPORTS = ("mqtt", "http")


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""

    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "cnc-simulator"
    qos: int = 1
    connect_timeout_s: float = 10.0


@dataclass
class HTTPConfig:
    """HTTP ingestion endpoint configuration."""

    url: str = "http://localhost:8080"
    timeout_s: float = 10.0


@dataclass
class UNSConfig:
    """Unified Namespace configuration."""

    enterprise: str = "demo-factory"
    site: str = "plant1"
    uns_prefix: str = ""
    umh_prefix: str = "umh.v1"
    umh_separator: str = "."
    data_contract: str = "_raw"


@dataclass
class SimulationConfig:
    """Simulation parameters."""

    tick_interval_ms: int = 3000
    output_format: str = "uns"
    transport: str = "mqtt"
    batch_size: int = 1
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 5000
    retry_jitter_pct: int = 0  # Randomization ±% around each backoff delay
    publish_workers: int = 8
    tick_workers: int = 2
    metrics_interval_s: int = 30
    machine_count: Optional[int] = None  # None = default roster as configured
    random_seed: Optional[int] = None

    def validate(self) -> None:
        if self.tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be positive")
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                f"output_format must be one of {', '.join(OUTPUT_FORMATS)}, "
                f"got '{self.output_format}'"
            )
        if self.transport not in TRANSPORTS:
            raise ValueError(
                f"transport must be one of {', '.join(TRANSPORTS)}, got '{self.transport}'"
            )
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.publish_workers < 1 or self.tick_workers < 1:
            raise ValueError("worker counts must be at least 1")


@dataclass
class Config:
    """Main configuration container."""

    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    http: HTTPConfig = field(default_factory=HTTPConfig)
    uns: UNSConfig = field(default_factory=UNSConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    # Roster override; empty means the built-in ten machine fleet
    machines: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls, base: Optional["Config"] = None) -> "Config":
        """Apply environment variable overrides (on top of `base` if given)."""
        config = base or cls.default()

        # MQTT settings
        broker_url = os.getenv("MQTT_BROKER_URL")
        if broker_url:
            parsed = urlparse(broker_url)
            config.mqtt.broker = parsed.hostname or config.mqtt.broker
            config.mqtt.port = parsed.port or config.mqtt.port
        config.mqtt.broker = os.getenv("MQTT_BROKER", config.mqtt.broker)
        config.mqtt.port = int(os.getenv("MQTT_PORT", config.mqtt.port))
        config.mqtt.username = os.getenv("MQTT_USERNAME", config.mqtt.username)
        config.mqtt.password = os.getenv("MQTT_PASSWORD", config.mqtt.password)

        # HTTP ingestion
        config.http.url = os.getenv("UMH_CORE_URL", config.http.url)

        # UNS identity segments
        config.uns.enterprise = (
            os.getenv("FACTORY_NAME") or os.getenv("ENTERPRISE_NAME") or config.uns.enterprise
        )
        config.uns.site = os.getenv("SITE_NAME") or os.getenv("PLANT_NAME") or config.uns.site

        # Simulation settings
        sim = config.simulation
        sim.tick_interval_ms = int(os.getenv("PUBLISH_INTERVAL", sim.tick_interval_ms))
        sim.output_format = os.getenv("OUTPUT_FORMAT", sim.output_format).lower()
        sim.transport = os.getenv("TRANSPORT", sim.transport).lower()
        sim.batch_size = int(os.getenv("BATCH_SIZE", sim.batch_size))
        sim.max_retries = int(os.getenv("MAX_RETRIES", sim.max_retries))

        seed = os.getenv("RANDOM_SEED")
        if seed:
            sim.random_seed = int(seed)
        count = os.getenv("MACHINE_COUNT")
        if count:
            sim.machine_count = int(count)

        sim.validate()
        return config

    @classmethod
    def default(cls) -> "Config":
        """Create default configuration."""
        return cls()

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        # MQTT config
        if "mqtt" in data:
            mqtt_data = data["mqtt"]
            config.mqtt = MQTTConfig(
                broker=mqtt_data.get("broker", config.mqtt.broker),
                port=mqtt_data.get("port", config.mqtt.port),
                username=mqtt_data.get("username", config.mqtt.username),
                password=mqtt_data.get("password", config.mqtt.password),
                client_id=mqtt_data.get("client_id", config.mqtt.client_id),
                qos=mqtt_data.get("qos", config.mqtt.qos),
                connect_timeout_s=mqtt_data.get(
                    "connect_timeout_s", config.mqtt.connect_timeout_s
                ),
            )

        # HTTP config
        if "http" in data:
            http_data = data["http"]
            config.http = HTTPConfig(
                url=http_data.get("url", config.http.url),
                timeout_s=http_data.get("timeout_s", config.http.timeout_s),
            )

        # UNS config
        if "uns" in data:
            uns_data = data["uns"]
            config.uns = UNSConfig(
                enterprise=uns_data.get("enterprise", config.uns.enterprise),
                site=uns_data.get("site", config.uns.site),
                uns_prefix=uns_data.get("uns_prefix", config.uns.uns_prefix),
                umh_prefix=uns_data.get("umh_prefix", config.uns.umh_prefix),
                umh_separator=uns_data.get("umh_separator", config.uns.umh_separator),
                data_contract=uns_data.get("data_contract", config.uns.data_contract),
            )

        # Simulation config
        if "simulation" in data:
            sim_data = data["simulation"]
            defaults = config.simulation
            config.simulation = SimulationConfig(
                tick_interval_ms=sim_data.get("tick_interval_ms", defaults.tick_interval_ms),
                output_format=sim_data.get("output_format", defaults.output_format),
                transport=sim_data.get("transport", defaults.transport),
                batch_size=sim_data.get("batch_size", defaults.batch_size),
                max_retries=sim_data.get("max_retries", defaults.max_retries),
                retry_base_delay_ms=sim_data.get(
                    "retry_base_delay_ms", defaults.retry_base_delay_ms
                ),
                retry_max_delay_ms=sim_data.get(
                    "retry_max_delay_ms", defaults.retry_max_delay_ms
                ),
                retry_jitter_pct=sim_data.get("retry_jitter_pct", defaults.retry_jitter_pct),
                publish_workers=sim_data.get("publish_workers", defaults.publish_workers),
                tick_workers=sim_data.get("tick_workers", defaults.tick_workers),
                metrics_interval_s=sim_data.get(
                    "metrics_interval_s", defaults.metrics_interval_s
                ),
                machine_count=sim_data.get("machine_count"),
                random_seed=sim_data.get("random_seed"),
            )
            config.simulation.validate()

        # Roster override
        if "machines" in data:
            config.machines = list(data["machines"] or [])

        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        data = {
            "mqtt": {
                "broker": self.mqtt.broker,
                "port": self.mqtt.port,
                "username": self.mqtt.username,
                "password": self.mqtt.password,
                "client_id": self.mqtt.client_id,
                "qos": self.mqtt.qos,
                "connect_timeout_s": self.mqtt.connect_timeout_s,
            },
            "http": {
                "url": self.http.url,
                "timeout_s": self.http.timeout_s,
            },
            "uns": {
                "enterprise": self.uns.enterprise,
                "site": self.uns.site,
                "uns_prefix": self.uns.uns_prefix,
                "umh_prefix": self.uns.umh_prefix,
                "umh_separator": self.uns.umh_separator,
                "data_contract": self.uns.data_contract,
            },
            "simulation": {
                "tick_interval_ms": self.simulation.tick_interval_ms,
                "output_format": self.simulation.output_format,
                "transport": self.simulation.transport,
                "batch_size": self.simulation.batch_size,
                "max_retries": self.simulation.max_retries,
                "retry_base_delay_ms": self.simulation.retry_base_delay_ms,
                "retry_max_delay_ms": self.simulation.retry_max_delay_ms,
                "retry_jitter_pct": self.simulation.retry_jitter_pct,
                "publish_workers": self.simulation.publish_workers,
                "tick_workers": self.simulation.tick_workers,
                "metrics_interval_s": self.simulation.metrics_interval_s,
                "machine_count": self.simulation.machine_count,
                "random_seed": self.simulation.random_seed,
            },
        }
        if self.machines:
            data["machines"] = self.machines

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
