"""Outbound gateways used by the booking core."""
