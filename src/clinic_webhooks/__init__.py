"""Outbound webhook delivery service for the clinic management platform."""

__version__ = "0.1.0"
