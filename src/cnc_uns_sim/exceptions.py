"""Exception types raised by the simulator and its sinks."""

from typing import List, Optional


class SimulatorError(Exception):
    """Base class for all simulator errors."""


class SinkConnectionError(SimulatorError, ConnectionError):
    """The sink could not be reached at startup."""


class DeliveryError(SimulatorError):
    """A message (or batch) could not be delivered to the sink."""

    def __init__(
        self,
        destination: str,
        cause: Optional[BaseException] = None,
        attempts: int = 1,
    ):
        self.destination = destination
        self.cause = cause
        self.attempts = attempts
        detail = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Delivery to {destination} failed after {attempts} attempt(s){detail}"
        )


class ValidationError(SimulatorError):
    """A wire message failed validation and must not be published."""

    def __init__(self, errors: List[str], topic: str = ""):
        self.errors = list(errors)
        self.topic = topic
        where = f" ({topic})" if topic else ""
        super().__init__(f"Invalid message{where}: {'; '.join(self.errors)}")


class AlreadyRunningError(SimulatorError):
    """start() was called on a simulator that is already running."""


class NotRunningError(SimulatorError):
    """An operation that needs a running simulator was called on a stopped one."""
