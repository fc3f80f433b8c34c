"""Observability: logging setup for helper lifecycle events."""
