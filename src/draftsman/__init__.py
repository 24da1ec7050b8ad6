"""Durable job orchestration for ticket-driven coding runs."""

__version__ = "0.1.0"
