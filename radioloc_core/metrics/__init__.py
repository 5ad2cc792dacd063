"""
Process-wide estimation metrics.

Usage:
    from radioloc_core.metrics import get_metrics

    get_metrics().increment_drop('degenerate_subset')
    get_metrics().log_summary()
"""

from .counters import DROP_REASONS, MetricsCollector, MetricsSnapshot

_global_metrics = None


def get_metrics() -> MetricsCollector:
    """Return the shared collector, creating it on first use."""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Replace the shared collector with an empty one."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['DROP_REASONS', 'MetricsCollector', 'MetricsSnapshot', 'get_metrics', 'reset_metrics']
