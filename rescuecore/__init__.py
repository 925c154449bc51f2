"""rescuecore: incident orchestration core of an emergency-response platform."""

__version__ = "0.1.0"
