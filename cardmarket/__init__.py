"""Order lifecycle and local-pickup verification service for the card marketplace."""

__version__ = "0.1.0"
