"""Long-lived background tasks owned by the process lifecycle."""

from otelapi.runtime.monitor import ConnectionMonitor

__all__ = ["ConnectionMonitor"]
