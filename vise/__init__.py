"""Declarative metric groups, label encoding and OpenMetrics/Prometheus text exposition."""

__version__ = "0.2.0"