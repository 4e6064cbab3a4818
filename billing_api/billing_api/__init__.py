"""HTTP surface of the BellyBox billing engine."""

__version__ = "0.4.0"
