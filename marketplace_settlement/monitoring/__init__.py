"""Monitoring and observability module."""
from marketplace_settlement.monitoring.logging import settlement_context, setup_logging
from marketplace_settlement.monitoring.metrics import metrics

__all__ = ["metrics", "settlement_context", "setup_logging"]
