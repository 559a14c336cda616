"""TimeDoctor Sync - keeps a TimeDoctor connection alive and mirrors its data locally."""

__version__ = "1.0.0"
