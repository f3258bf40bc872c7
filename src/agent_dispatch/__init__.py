"""Task dispatch and interactive session streaming for coding-agent CLIs."""

__version__ = "0.1.0"
