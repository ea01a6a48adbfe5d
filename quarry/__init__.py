"""quarry - a source-based package manager core."""

__version__ = "1.0.0"
