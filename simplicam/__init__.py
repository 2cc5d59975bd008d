"""SimpliSafe camera streaming bridge for HomeKit."""

__version__ = "1.0.0"
