"""Version information for the tcplisten package."""

__version__ = "1.0.0"
