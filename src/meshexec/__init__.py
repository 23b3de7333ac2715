"""meshexec: host agent that runs and supervises containers for a central scheduler."""

__version__ = "0.1.0"
