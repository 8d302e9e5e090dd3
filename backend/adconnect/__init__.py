"""OAuth connection and credential lifecycle manager for ad platforms."""

__version__ = "1.0.0"
