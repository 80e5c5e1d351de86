"""Restaurant marketing campaign engine."""

__version__ = "0.1.0"
