"""Billing engine: gateway-agnostic payments, recurring billing and refunds."""

__version__ = "0.1.0"
