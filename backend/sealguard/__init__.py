"""sealguard - seal & field verification service for trip custody."""

__version__ = "1.0.0"
