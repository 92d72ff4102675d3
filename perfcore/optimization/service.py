"""性能服务

按会话创建的组合根：构造并装配指标收集器、缓存、调度器、批处理器和资源监控器，
提供 start/stop 生命周期、缓存旁路加载以及给宿主界面使用的只读快照。
"""

import asyncio
import dataclasses
import gc
import hashlib
from collections.abc import Awaitable, Callable
from typing import Any

from perfcore.common.clock import Clock, SystemClock
from perfcore.common.logger import get_logger
from perfcore.common.memory_utils import SizeEstimator, get_size_estimator
from perfcore.config.config import PerfConfig
from perfcore.optimization.batch_scheduler import BatchProcessor
from perfcore.optimization.cache_manager import DEFAULT_PRIORITY, AdaptiveCache
from perfcore.optimization.metrics import MetricsCollector, PerformanceMetrics
from perfcore.optimization.resource_monitor import (
    MemoryProbe,
    OptimizationHooks,
    PsutilMemoryProbe,
    ResourceMonitor,
)
from perfcore.optimization.scheduler import OperationScheduler, Tier, TransientPredicate

logger = get_logger("perf_service")

_SECTIONS = ("cache", "scheduler", "batch", "monitor", "metrics")


class PerformanceService:
    """性能服务，每个宿主会话创建一个实例"""

    def __init__(
        self,
        config: PerfConfig | None = None,
        *,
        clock: Clock | None = None,
        probe: MemoryProbe | None = None,
        gc_trigger: Callable[[], Any] | None = gc.collect,
        size_estimator: SizeEstimator | None = None,
        is_transient: TransientPredicate | None = None,
    ):
        self.config = config or PerfConfig()
        self.clock = clock or SystemClock()
        cfg = self.config

        self.metrics = MetricsCollector(slow_threshold_ms=cfg.metrics.slow_threshold_ms)
        self.cache: AdaptiveCache[Any] = AdaptiveCache(
            max_entries=cfg.cache.max_entries,
            max_memory_bytes=cfg.cache.max_memory_bytes,
            default_ttl=cfg.cache.default_ttl,
            hot_threshold=cfg.cache.hot_threshold,
            invalidation_patterns=cfg.cache.invalidation_patterns,
            eviction_weights=cfg.cache.eviction_weights,
            size_estimator=size_estimator or get_size_estimator(cfg.cache.size_strategy),
            metrics=self.metrics,
            clock=self.clock,
        )
        self.scheduler = OperationScheduler(
            max_concurrent=cfg.scheduler.max_concurrent_operations,
            high_concurrency=cfg.scheduler.high_concurrency,
            max_retries=cfg.scheduler.max_retries,
            retry_base_delay=cfg.scheduler.retry_base_delay,
            low_tier_delay=cfg.scheduler.low_tier_delay,
            max_queue_size=cfg.scheduler.max_queue_size,
            is_transient=is_transient,
            metrics=self.metrics,
            clock=self.clock,
            enabled=cfg.scheduler.enable_async_processing,
        )
        self.batch = BatchProcessor(
            self.scheduler,
            batch_size=cfg.batch.batch_size,
            flush_interval=cfg.batch.flush_interval,
            enabled=cfg.batch.enabled,
            clock=self.clock,
        )
        self.monitor = ResourceMonitor(
            probe=probe if probe is not None else PsutilMemoryProbe(cfg.monitor.memory_budget_bytes),
            hooks=OptimizationHooks(
                trim_cache=self.cache.trim,
                reduce_concurrency=self.scheduler.decrease_concurrency,
                restore_concurrency=self.scheduler.increase_concurrency,
                collect_garbage=gc_trigger,
            ),
            sample_interval=cfg.monitor.sample_interval,
            memory_threshold_ratio=cfg.monitor.memory_threshold_ratio,
            low_usage_ratio=cfg.monitor.low_usage_ratio,
            recovery_samples=cfg.monitor.recovery_samples,
            gc_interval=cfg.monitor.gc_interval,
            enabled=cfg.monitor.optimization_enabled,
            history_size=cfg.monitor.history_size,
            clock=self.clock,
        )

        self._is_running = False

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        """启动后台任务"""
        if self._is_running:
            return
        self._is_running = True

        await self.scheduler.start()
        await self.batch.start()
        if self.config.cache.cleanup_interval > 0:
            await self.cache.start_cleanup_task(self.config.cache.cleanup_interval)
        if self.config.monitor.optimization_enabled:
            await self.monitor.start()
        logger.info("性能服务已启动")

    async def stop(self) -> None:
        """停止所有后台任务，刷新剩余批次并清空缓存"""
        if not self._is_running:
            return
        self._is_running = False

        await self.monitor.stop()
        await self.batch.stop()
        await self.cache.stop_cleanup_task()
        await self.scheduler.stop()
        self.cache.clear()
        logger.info("性能服务已停止")

    async def __aenter__(self) -> "PerformanceService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # 缓存旁路加载
    # ------------------------------------------------------------------

    async def get_cached_result(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
        tier: Tier = Tier.MEDIUM,
        priority: int = DEFAULT_PRIORITY,
    ) -> Any:
        """先查缓存，未命中时通过调度器加载并写回

        以 key 作为操作 ID，同一个键的并发未命中只加载一次；
        共享的 Future 经 shield 等待，某个调用方被取消不会影响其他调用方。
        """
        if not self.config.enable_caching:
            return await asyncio.shield(self.scheduler.submit(loader, tier=tier, operation_id=key))

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        async def load_and_store():
            start = self.clock.now()
            value = await loader()
            self.metrics.record_operation("cache.load", (self.clock.now() - start) * 1000)
            if value is not None:
                self.cache.set(key, value, ttl=ttl, priority=priority)
            return value

        return await asyncio.shield(self.scheduler.submit(load_and_store, tier=tier, operation_id=key))

    @staticmethod
    def generate_cache_key(
        operation: str,
        uri: str,
        version: int | str,
        content: str | bytes,
        position: tuple[int, int] | None = None,
    ) -> str:
        """生成确定性的缓存键: operation:uri:version:content_hash[:line:character]"""
        data = content if isinstance(content, bytes) else content.encode("utf-8")
        content_hash = hashlib.md5(data).hexdigest()[:16]
        key = f"{operation}:{uri}:{version}:{content_hash}"
        if position is not None:
            line, character = position
            key += f":{line}:{character}"
        return key

    def invalidate_cache(self, pattern: str = "*") -> int:
        """按通配符失效缓存，默认清空"""
        count = self.cache.invalidate_matching(pattern)
        logger.debug(f"缓存失效: {pattern} ({count}项)")
        return count

    def invalidate_category(self, category: str) -> int:
        return self.cache.invalidate_by_pattern(category)

    # ------------------------------------------------------------------
    # 运行时配置
    # ------------------------------------------------------------------

    async def set_configuration(self, **changes: Any) -> PerfConfig:
        """部分更新配置并应用到正在运行的组件

        既可以按段传入（cache={"max_entries": 10}），也可以直接传入字段名（max_entries=10）。
        校验失败时抛出 ConfigError，原配置保持不变。
        """
        new_config = self.config.merged(self._normalize_changes(changes))
        old_config = self.config
        self.config = new_config

        cache_cfg = new_config.cache
        self.cache.default_ttl = cache_cfg.default_ttl
        self.cache.hot_threshold = cache_cfg.hot_threshold
        self.cache.weights = cache_cfg.eviction_weights
        if (
            cache_cfg.max_entries != old_config.cache.max_entries
            or cache_cfg.max_memory_bytes != old_config.cache.max_memory_bytes
        ):
            self.cache.max_entries = cache_cfg.max_entries
            self.cache.max_memory_bytes = cache_cfg.max_memory_bytes
            await self.cache.trim(target_ratio=1.0)

        sched_cfg = new_config.scheduler
        if sched_cfg.max_concurrent_operations != old_config.scheduler.max_concurrent_operations:
            self.scheduler.set_ceiling(sched_cfg.max_concurrent_operations)
        self.scheduler.high_concurrency = sched_cfg.high_concurrency
        self.scheduler.max_retries = sched_cfg.max_retries
        self.scheduler.retry_base_delay = sched_cfg.retry_base_delay
        self.scheduler.low_tier_delay = sched_cfg.low_tier_delay
        self.scheduler.max_queue_size = sched_cfg.max_queue_size
        self.scheduler.enabled = sched_cfg.enable_async_processing

        batch_cfg = new_config.batch
        self.batch.batch_size = batch_cfg.batch_size
        self.batch.flush_interval = batch_cfg.flush_interval
        if self.batch.enabled and not batch_cfg.enabled:
            await self.batch.flush_all()
        self.batch.enabled = batch_cfg.enabled

        monitor_cfg = new_config.monitor
        self.monitor.sample_interval = monitor_cfg.sample_interval
        self.monitor.memory_threshold_ratio = monitor_cfg.memory_threshold_ratio
        self.monitor.low_usage_ratio = monitor_cfg.low_usage_ratio
        self.monitor.recovery_samples = monitor_cfg.recovery_samples
        self.monitor.gc_interval = monitor_cfg.gc_interval
        self.monitor.optimization_enabled = monitor_cfg.optimization_enabled and self.monitor.probe_available
        if self._is_running and monitor_cfg.optimization_enabled and not old_config.monitor.optimization_enabled:
            await self.monitor.start()

        self.metrics.slow_threshold_ms = new_config.metrics.slow_threshold_ms

        logger.info(f"性能配置已更新: {sorted(changes)}")
        return new_config

    @staticmethod
    def _normalize_changes(changes: dict[str, Any]) -> dict[str, Any]:
        normalized: dict[str, Any] = {}
        field_sections = {
            name: section
            for section in _SECTIONS
            for name in PerfConfig.model_fields[section].annotation.model_fields
        }
        for key, value in changes.items():
            if key in _SECTIONS or key in PerfConfig.model_fields:
                normalized[key] = value
            elif key in field_sections:
                normalized.setdefault(field_sections[key], {})[key] = value
            else:
                raise KeyError(f"未知的配置项: {key}")
        return normalized

    # ------------------------------------------------------------------
    # 只读快照
    # ------------------------------------------------------------------

    def get_performance_metrics(self) -> PerformanceMetrics:
        return self.cache.stats()

    def get_operation_stats(self) -> dict[str, dict[str, Any]]:
        return {
            name: {**dataclasses.asdict(stats), "avg_duration_ms": stats.avg_duration_ms}
            for name, stats in self.metrics.operation_stats().items()
        }

    def get_task_queue_status(self) -> dict[str, int]:
        return self.scheduler.get_queue_status()

    def get_resource_usage(self) -> dict[str, Any]:
        return self.monitor.get_resource_usage()

    def get_stats(self) -> dict[str, Any]:
        """获取统计信息"""
        metrics = self.cache.stats()
        batch_stats = self.batch.get_stats()
        return {
            "cache": {
                **dataclasses.asdict(metrics),
                "hit_rate": metrics.hit_rate,
                "memory_usage_ratio": metrics.memory_usage_ratio,
            },
            "scheduler": self.scheduler.get_queue_status(),
            "batch": {**dataclasses.asdict(batch_stats), "avg_batch_size": batch_stats.avg_batch_size},
            "monitor": self.monitor.get_stats(),
            "operations": self.get_operation_stats(),
        }
