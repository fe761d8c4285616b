"""Allay observability package: request and Slack API metrics."""

from allay.observability.metrics import MetricsCollector, get_metrics

__all__ = ["MetricsCollector", "get_metrics"]
