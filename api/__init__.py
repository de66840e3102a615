"""HTTP API exposing the metering-data collector."""
