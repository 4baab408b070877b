"""Session coordination for host/viewer live streams."""

__version__ = "0.1.0"
