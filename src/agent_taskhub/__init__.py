"""Task queue and lifecycle supervisor for a single automated coding agent."""

__version__ = "0.1.0"
