"""Status and location servers and a sensor client speaking a small text protocol over TCP."""

__version__ = "0.1.0"
__all__ = ["__version__"]