"""Job discovery, scoring and browser-driven application automation."""

__version__ = "0.1.0"
