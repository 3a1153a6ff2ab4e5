"""Durable repository-evaluation queue with batch aggregation."""

__version__ = "0.1.0"
