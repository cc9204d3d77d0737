"""Agency membership and verification lifecycle engine."""

__version__ = "1.0.0"
