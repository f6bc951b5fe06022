"""Relay Jobs: durable background jobs with broker dispatch and retry backoff."""

__version__ = "1.0.0"
