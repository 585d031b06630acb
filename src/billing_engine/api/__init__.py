"""Inbound HTTP surface: gateway callbacks and health probes."""
