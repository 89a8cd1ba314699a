"""Version information for mcps."""

__version__ = "1.0.0"
