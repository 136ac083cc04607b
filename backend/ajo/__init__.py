"""Smart Ajo payment verification and membership activation service."""

__version__ = "1.0.0"
