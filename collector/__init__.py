"""Enedis / Switchgrid metering-data collector."""

__version__ = "1.0.0"
