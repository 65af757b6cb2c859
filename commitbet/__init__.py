"""commitbet - stake virtual money on finishing what you start."""

__version__ = "0.1.0"
