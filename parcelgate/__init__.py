"""ParcelGate: authentication and API key lifecycle for the warehouse backend."""

__version__ = "1.0.0"
