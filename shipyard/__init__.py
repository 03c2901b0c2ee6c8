"""Shipyard: gated, environment-by-environment delivery pipeline engine."""

__version__ = "0.1.0"
