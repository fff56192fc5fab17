"""polyflux -- leveraged positions on Polymarket outcomes."""

__version__ = "0.1.0"
