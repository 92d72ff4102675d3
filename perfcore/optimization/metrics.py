"""性能指标收集

所有记录操作都是 O(1) 的计数器累加；命中率、平均延迟、效率分等派生值
只在读取时由精确的累计值计算，不维护滑动平均。
"""

from dataclasses import dataclass, field

from perfcore.common.logger import get_logger

logger = get_logger("metrics")

# 效率分权重：内存余量 / 命中率 / 延迟因子
MEMORY_WEIGHT = 0.3
HIT_RATE_WEIGHT = 0.4
LATENCY_WEIGHT = 0.3


def latency_factor(avg_latency_ms: float, sample_count: int) -> float:
    """平均延迟 <50ms → 1.0，<100ms → 0.8，其余 0.6；没有样本时视为 1.0"""
    if sample_count == 0 or avg_latency_ms < 50:
        return 1.0
    if avg_latency_ms < 100:
        return 0.8
    return 0.6


@dataclass
class PerformanceMetrics:
    """性能指标快照

    Attributes:
        hits: 命中次数
        misses: 未命中次数
        evictions: 淘汰次数
        avg_latency_ms: 平均延迟（毫秒）
        slow_op_count: 慢操作次数
        total_entries: 当前缓存条目数
        memory_bytes: 当前估算内存占用（字节）
        max_memory_bytes: 内存上限（字节）
        efficiency_score: 综合效率分 [0, 1]
    """

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    avg_latency_ms: float = 0.0
    slow_op_count: int = 0
    total_entries: int = 0
    memory_bytes: int = 0
    max_memory_bytes: int = 0
    efficiency_score: float = 1.0

    @property
    def hit_rate(self) -> float:
        """命中率"""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def memory_usage_ratio(self) -> float:
        if self.max_memory_bytes <= 0:
            return 0.0
        return min(1.0, self.memory_bytes / self.max_memory_bytes)


@dataclass
class OperationStats:
    """单类操作的统计"""

    name: str
    count: int = 0
    failures: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0

    @property
    def avg_duration_ms(self) -> float:
        return self.total_duration_ms / self.count if self.count > 0 else 0.0

    @property
    def success_rate(self) -> float:
        return (self.count - self.failures) / self.count if self.count > 0 else 1.0


@dataclass
class MetricsCollector:
    """命中/未命中/延迟/淘汰计数器"""

    slow_threshold_ms: float = 100.0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    latency_count: int = 0
    latency_total_ms: float = 0.0
    slow_op_count: int = 0
    _operations: dict[str, OperationStats] = field(default_factory=dict, repr=False)

    def record_hit(self) -> None:
        self.hits += 1

    def record_miss(self) -> None:
        self.misses += 1

    def record_eviction(self, count: int = 1) -> None:
        self.evictions += count

    def record_latency(self, duration_ms: float) -> None:
        duration_ms = max(0.0, duration_ms)
        self.latency_count += 1
        self.latency_total_ms += duration_ms
        if duration_ms >= self.slow_threshold_ms:
            self.slow_op_count += 1

    def record_operation(self, name: str, duration_ms: float, success: bool = True) -> None:
        """记录一次具名操作的耗时与结果"""
        stats = self._operations.get(name)
        if stats is None:
            stats = self._operations[name] = OperationStats(name=name)
        stats.count += 1
        stats.total_duration_ms += duration_ms
        if duration_ms > stats.max_duration_ms:
            stats.max_duration_ms = duration_ms
        if not success:
            stats.failures += 1
        if duration_ms >= self.slow_threshold_ms:
            logger.debug(f"慢操作: {name} 耗时 {duration_ms:.1f}ms")

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def avg_latency_ms(self) -> float:
        return self.latency_total_ms / self.latency_count if self.latency_count > 0 else 0.0

    def efficiency_score(self, memory_usage_ratio: float) -> float:
        """0.3·(1 − 内存占用比) + 0.4·命中率 + 0.3·延迟因子"""
        ratio = min(1.0, max(0.0, memory_usage_ratio))
        return (
            MEMORY_WEIGHT * (1.0 - ratio)
            + HIT_RATE_WEIGHT * self.hit_rate
            + LATENCY_WEIGHT * latency_factor(self.avg_latency_ms, self.latency_count)
        )

    def snapshot(self, total_entries: int = 0, memory_bytes: int = 0, max_memory_bytes: int = 0) -> PerformanceMetrics:
        ratio = memory_bytes / max_memory_bytes if max_memory_bytes > 0 else 0.0
        return PerformanceMetrics(
            hits=self.hits,
            misses=self.misses,
            evictions=self.evictions,
            avg_latency_ms=self.avg_latency_ms,
            slow_op_count=self.slow_op_count,
            total_entries=total_entries,
            memory_bytes=memory_bytes,
            max_memory_bytes=max_memory_bytes,
            efficiency_score=self.efficiency_score(ratio),
        )

    def operation_stats(self) -> dict[str, OperationStats]:
        return {name: OperationStats(**vars(stats)) for name, stats in self._operations.items()}

    def reset(self) -> None:
        self.hits = self.misses = self.evictions = 0
        self.latency_count = 0
        self.latency_total_ms = 0.0
        self.slow_op_count = 0
        self._operations.clear()
