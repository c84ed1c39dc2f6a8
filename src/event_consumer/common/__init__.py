"""Shared infrastructure: errors, logging, metrics and resilience primitives."""
