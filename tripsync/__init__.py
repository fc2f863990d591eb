"""Trip detection and telemetry stream sync."""

__version__ = "0.1.0"
