"""perfcore - 自适应缓存与分级调度核心"""

from perfcore.config.config import PerfConfig, load_config
from perfcore.optimization import (
    AdaptiveCache,
    BatchProcessor,
    MetricsCollector,
    OperationScheduler,
    PerformanceService,
    ResourceMonitor,
    Tier,
)

__version__ = "0.1.0"

__all__ = [
    "AdaptiveCache",
    "BatchProcessor",
    "MetricsCollector",
    "OperationScheduler",
    "PerfConfig",
    "PerformanceService",
    "ResourceMonitor",
    "Tier",
    "load_config",
]
