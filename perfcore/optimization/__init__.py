"""性能优化层

职责：
- 自适应缓存
- 分级并发调度与重试
- 批处理合并
- 资源监控与自适应调整
- 性能指标
"""

from .batch_scheduler import (
    BatchOperation,
    BatchProcessor,
    BatchStats,
)
from .cache_manager import (
    AdaptiveCache,
    CacheEntry,
    DEFAULT_PRIORITY,
)
from .exceptions import (
    BatchError,
    CacheError,
    OperationError,
    PerfCoreError,
    PermanentOperationError,
    ResourceError,
    RetryExhaustedError,
    TransientOperationError,
)
from .metrics import (
    MetricsCollector,
    OperationStats,
    PerformanceMetrics,
)
from .resource_monitor import (
    MemoryProbe,
    OptimizationHooks,
    ProbeReading,
    PsutilMemoryProbe,
    ResourceMonitor,
    ResourceSample,
)
from .scheduler import (
    OperationScheduler,
    OperationState,
    ScheduledOperation,
    Tier,
    is_transient_error,
)
from .service import PerformanceService

__all__ = [
    # Cache
    "AdaptiveCache",
    "CacheEntry",
    "DEFAULT_PRIORITY",
    # Scheduler
    "OperationScheduler",
    "OperationState",
    "ScheduledOperation",
    "Tier",
    "is_transient_error",
    # Batch
    "BatchProcessor",
    "BatchOperation",
    "BatchStats",
    # Resource Monitor
    "ResourceMonitor",
    "ResourceSample",
    "ProbeReading",
    "MemoryProbe",
    "PsutilMemoryProbe",
    "OptimizationHooks",
    # Metrics
    "MetricsCollector",
    "PerformanceMetrics",
    "OperationStats",
    # Service
    "PerformanceService",
    # Errors
    "PerfCoreError",
    "CacheError",
    "OperationError",
    "TransientOperationError",
    "PermanentOperationError",
    "RetryExhaustedError",
    "BatchError",
    "ResourceError",
]
