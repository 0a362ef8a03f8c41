from .cache_metrics import (
    HealthReport,
    LoggingSink,
    MetricsCollector,
    MetricsSink,
    NullSink,
    PrometheusSink,
)

__all__ = [
    'HealthReport',
    'LoggingSink',
    'MetricsCollector',
    'MetricsSink',
    'NullSink',
    'PrometheusSink',
]
