"""Monitoring and observability."""
from .logging import setup_logging
from .metrics import metrics

__all__ = ["metrics", "setup_logging"]
