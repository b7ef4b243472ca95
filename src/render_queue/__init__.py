"""Durable render job queue with bounded concurrent workers and credit billing."""

__version__ = "0.3.0"
