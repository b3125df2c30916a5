"""CNC UNS Simulator - synthetic CNC fleet telemetry for a Unified Namespace."""

__version__ = "0.1.0"

from .simulator import Simulator, SimulationMetrics
from .config import Config

__all__ = ["Simulator", "SimulationMetrics", "Config", "__version__"]
