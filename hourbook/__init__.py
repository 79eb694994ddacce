"""Hourbook: weekly time aggregation core with a durable write queue."""

__version__ = "1.0.0"
