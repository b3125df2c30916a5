"""Command-line interface for the CNC UNS Simulator."""

import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path

import click
from dotenv import load_dotenv

from . import __version__
from .config import OUTPUT_FORMATS, TRANSPORTS, Config
from .cycle import MachineCycleEngine
from .exceptions import SinkConnectionError
from .simulator import Simulator, roster_from_config

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_config(config_path) -> Config:
    """YAML file (if given) first, then environment overrides."""
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info(f"Loaded environment from: {env_path}")

    base = Config.from_yaml(config_path) if config_path else Config.default()
    return Config.from_env(base)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
def main(verbose):
    """CNC UNS Simulator - synthetic telemetry for a fleet of CNC machines.

    Publishes spindle, axis, tool, coolant, status and production readings
    into a Unified Namespace, either as hierarchical UNS topics or as
    compact UMH tags, over MQTT or HTTP.
    """
    _setup_logging(verbose)


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to a YAML config file",
)
@click.option("--broker", "-b", default=None, help="MQTT broker address")
@click.option("--port", "-p", type=int, default=None, help="MQTT broker port")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(OUTPUT_FORMATS),
    default=None,
    help="Output schema (uns, umh or both)",
)
@click.option(
    "--transport",
    "-t",
    type=click.Choice(TRANSPORTS),
    default=None,
    help="Delivery transport",
)
@click.option(
    "--interval",
    "-i",
    type=click.IntRange(min=1),
    default=None,
    help="Tick interval in milliseconds",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Log messages instead of sending them (MQTT transport)",
)
def run(config_path, broker, port, output_format, transport, interval, dry_run):
    """Start the simulator and run until interrupted."""
    try:
        cfg = _load_config(config_path)
        if broker:
            cfg.mqtt.broker = broker
        if port:
            cfg.mqtt.port = port
        if output_format:
            cfg.simulation.output_format = output_format
        if transport:
            cfg.simulation.transport = transport
        if interval:
            cfg.simulation.tick_interval_ms = interval
        sim = Simulator.from_config(cfg, dry_run=dry_run)
    except (ValueError, KeyError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(2)

    shutdown = threading.Event()

    def signal_handler(sig, frame):
        logger.info("Shutting down...")
        shutdown.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        sim.start()
    except SinkConnectionError as e:
        logger.error(f"Failed to start simulator: {e}")
        sys.exit(1)

    click.echo()
    click.echo("=" * 60)
    click.echo("CNC UNS Simulator")
    click.echo("=" * 60)
    click.echo(f"Enterprise: {cfg.uns.enterprise} / {cfg.uns.site}")
    click.echo(f"Format:     {cfg.simulation.output_format}")
    if cfg.simulation.transport == "http":
        click.echo(f"Transport:  http {cfg.http.url}")
    else:
        click.echo(f"Transport:  mqtt {cfg.mqtt.broker}:{cfg.mqtt.port}")
    click.echo(f"Tick:       {cfg.simulation.tick_interval_ms}ms")
    click.echo(f"Machines:   {len(sim.engines)}")
    click.echo("=" * 60)
    click.echo("Press Ctrl+C to stop")

    try:
        while not shutdown.wait(timeout=cfg.simulation.metrics_interval_s):
            _log_metrics(sim)
    finally:
        sim.stop()
        _log_metrics(sim)


def _log_metrics(sim: Simulator) -> None:
    m = sim.metrics()
    logger.info(
        f"Metrics: {m.total_messages_published} published "
        f"({m.messages_per_second}/s), {m.active_machines} active machines, "
        f"{m.failed_messages} failed, {m.validation_failures} invalid, "
        f"{m.batches_sent} batches, {m.skipped_ticks} skipped ticks, "
        f"uptime {m.uptime_seconds:.0f}s"
    )
    for error in m.recent_errors[-3:]:
        logger.warning(f"Recent error: {error}")


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
@click.option(
    "--with-machines",
    is_flag=True,
    default=False,
    help="Write the default machine roster into the config",
)
def init(output, with_machines):
    """Generate a sample configuration file.

    Creates config.yaml with default settings for MQTT, HTTP, the UNS
    identity segments and simulation parameters.
    """
    from .machines import DEFAULT_MACHINES

    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    if with_machines:
        cfg.machines = [dict(entry) for entry in DEFAULT_MACHINES]
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - MQTT broker or HTTP endpoint")
    click.echo("  - Enterprise/Site names")
    click.echo("  - Tick interval, output format and batching")
    click.echo()
    click.echo(f"Run with: cnc-sim run --config {config_path}")


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to a YAML config file",
)
@click.option("--as-json", is_flag=True, default=False, help="Print machine metadata as JSON")
def machines(config_path, as_json):
    """List the configured machines and their initial phase."""
    try:
        profiles = roster_from_config(_load_config(config_path))
    except (ValueError, KeyError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(2)

    if as_json:
        click.echo(json.dumps([p.to_meta_dict() for p in profiles], indent=2))
        return

    now = time.time()
    for profile in profiles:
        engine = MachineCycleEngine(profile, now)
        caps = profile.capabilities
        click.echo(
            f"{profile.machine_id:<9} {profile.display_name:<28} "
            f"{profile.location.area}/{profile.location.work_cell:<12} "
            f"{caps.axes}-axis {caps.spindle_rpm_max:>6} rpm  "
            f"{profile.status.value:<17} {engine.phase.value}"
        )


@main.command()
@click.option("--broker", "-b", default="localhost", help="MQTT broker address")
@click.option("--port", "-p", type=int, default=1883, help="MQTT broker port")
@click.option(
    "--filter",
    "-f",
    "topic_filter",
    default="#",
    help="Topic filter (default: # for all)",
)
def subscribe(broker, port, topic_filter):
    """Subscribe to simulator topics and display messages.

    Useful for debugging and monitoring the simulator output.
    """
    import paho.mqtt.client as mqtt

    def on_message(client, userdata, msg):
        try:
            payload = json.loads(msg.payload.decode())
            click.echo(f"{msg.topic}: {json.dumps(payload, indent=2)}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            click.echo(f"{msg.topic}: {msg.payload!r}")

    def on_connect(client, userdata, flags, rc, properties=None):
        if rc == 0:
            client.subscribe(topic_filter)
            click.echo(f"Subscribed to: {topic_filter}")
            click.echo("Press Ctrl+C to stop")
            click.echo("-" * 40)

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.on_connect = on_connect
    client.on_message = on_message

    try:
        client.connect(broker, port)
        client.loop_forever()
    except KeyboardInterrupt:
        click.echo("\nDisconnected")
    except OSError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
