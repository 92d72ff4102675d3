"""
资源监控器 - 定时采样内存使用并自适应调整

- 每 sample_interval 秒读取一次内存探针，保留最近 history_size 个采样
- 使用比例超过 memory_threshold_ratio 时触发一次优化（收缩缓存、降低并发上限、请求垃圾回收），
  直到使用比例回落到阈值以下才会再次触发
- 连续 recovery_samples 个采样低于 low_usage_ratio 时，并发上限恢复一级
- 探针不可用时记录日志并关闭自适应优化，缓存与调度器照常工作

监控器只通过 OptimizationHooks 中的回调影响缓存和调度器，不接触它们的内部状态。
"""

import asyncio
import gc
import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import psutil

from perfcore.common.clock import Clock, SystemClock
from perfcore.common.logger import get_logger
from perfcore.common.memory_utils import format_size
from perfcore.optimization.exceptions import ResourceError

logger = get_logger("resource_monitor")

# 时间戳最小递增量，保证采样时间严格递增
_TIMESTAMP_EPSILON = 1e-6


@dataclass(frozen=True)
class ProbeReading:
    """探针的一次读数"""

    heap_used: int
    heap_total: int
    cpu_percent: float = 0.0
    cpu_cores: int = 0


@dataclass(frozen=True)
class ResourceSample:
    """资源采样"""

    heap_used: int
    heap_total: int
    timestamp: float
    cpu_percent: float = 0.0
    cpu_cores: int = 0

    @property
    def usage_ratio(self) -> float:
        return self.heap_used / self.heap_total if self.heap_total > 0 else 0.0


@runtime_checkable
class MemoryProbe(Protocol):
    def read(self) -> ProbeReading: ...


class PsutilMemoryProbe:
    """基于 psutil 的内存探针

    budget_bytes > 0 时以进程 RSS 对比预算，否则使用系统内存的已用/总量。
    """

    def __init__(self, budget_bytes: int = 0):
        self.budget_bytes = budget_bytes
        self._process = psutil.Process()
        # 第一次调用 cpu_percent(interval=None) 总是返回 0，先预热
        psutil.cpu_percent(interval=None)

    def read(self) -> ProbeReading:
        try:
            if self.budget_bytes > 0:
                used = self._process.memory_info().rss
                total = self.budget_bytes
            else:
                memory = psutil.virtual_memory()
                used = memory.total - memory.available
                total = memory.total
            cpu_percent = psutil.cpu_percent(interval=None)
            cpu_cores = psutil.cpu_count() or 0
        except (psutil.Error, OSError) as e:
            raise ResourceError(f"读取内存信息失败: {e}") from e
        return ProbeReading(heap_used=used, heap_total=total, cpu_percent=cpu_percent, cpu_cores=cpu_cores)


@dataclass
class OptimizationHooks:
    """优化时调用的回调，均可为空

    Attributes:
        trim_cache: 收缩缓存，可以是协程函数
        reduce_concurrency: 并发上限减一，返回新值
        restore_concurrency: 并发上限加一，返回新值
        collect_garbage: 请求垃圾回收
    """

    trim_cache: Callable[[], Awaitable[Any] | Any] | None = None
    reduce_concurrency: Callable[[], Any] | None = None
    restore_concurrency: Callable[[], Any] | None = None
    collect_garbage: Callable[[], Any] | None = gc.collect


class ResourceMonitor:
    """资源监控器"""

    def __init__(
        self,
        probe: MemoryProbe | None = None,
        hooks: OptimizationHooks | None = None,
        sample_interval: float = 30.0,
        memory_threshold_ratio: float = 0.8,
        low_usage_ratio: float = 0.3,
        recovery_samples: int = 3,
        gc_interval: float = 300.0,
        enabled: bool = True,
        history_size: int = 100,
        clock: Clock | None = None,
    ):
        if sample_interval < 1:
            raise ValueError("采样间隔不能小于1秒")

        self.probe = probe if probe is not None else PsutilMemoryProbe()
        self.hooks = hooks or OptimizationHooks()
        self.sample_interval = sample_interval
        self.memory_threshold_ratio = memory_threshold_ratio
        self.low_usage_ratio = low_usage_ratio
        self.recovery_samples = max(1, recovery_samples)
        self.gc_interval = gc_interval
        self.optimization_enabled = enabled
        self.clock = clock or SystemClock()

        self._history: deque[ResourceSample] = deque(maxlen=max(1, history_size))
        self._above_threshold = False
        self._low_streak = 0
        self._probe_failed = False
        self._last_gc = 0.0

        self._monitor_task: asyncio.Task | None = None
        self._is_running = False

        # 统计信息
        self.stats = {
            "samples": 0,
            "optimizations": 0,
            "recoveries": 0,
            "gc_runs": 0,
            "probe_failures": 0,
        }

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """启动监控"""
        if self._is_running:
            logger.warning("资源监控已在运行")
            return

        self._is_running = True
        self._last_gc = self.clock.now()
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name="resource_monitor")
        logger.info(f"资源监控已启动，采样间隔{self.sample_interval}秒")

    async def stop(self) -> None:
        """停止监控"""
        if not self._is_running:
            return

        self._is_running = False
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        logger.info("资源监控已停止")

    async def _monitor_loop(self) -> None:
        """监控循环"""
        while self._is_running:
            try:
                await self.clock.sleep(self.sample_interval)
                if not self._is_running:
                    break

                if not self._probe_failed:
                    sample = self.sample()
                    await self.check_threshold(sample)

                await self._maybe_periodic_gc()
            except asyncio.CancelledError:
                break
            except ResourceError as e:
                self._on_probe_failure(e)
            except Exception as e:
                logger.error(f"资源监控循环异常: {e}")

    def _on_probe_failure(self, error: Exception) -> None:
        self._probe_failed = True
        self.stats["probe_failures"] += 1
        if self.optimization_enabled:
            self.optimization_enabled = False
            logger.error(f"内存探针不可用，已关闭自适应优化: {error}")

    # ------------------------------------------------------------------
    # 采样与判定
    # ------------------------------------------------------------------

    def sample(self) -> ResourceSample:
        """读取一次探针并记录采样

        Raises:
            ResourceError: 探针不可用
        """
        try:
            reading = self.probe.read()
        except ResourceError:
            raise
        except Exception as e:
            raise ResourceError(f"内存探针读取失败: {e}") from e

        timestamp = self.clock.now()
        if self._history and timestamp <= self._history[-1].timestamp:
            timestamp = self._history[-1].timestamp + _TIMESTAMP_EPSILON

        sample = ResourceSample(
            heap_used=reading.heap_used,
            heap_total=reading.heap_total,
            timestamp=timestamp,
            cpu_percent=reading.cpu_percent,
            cpu_cores=reading.cpu_cores,
        )
        self._history.append(sample)
        self.stats["samples"] += 1
        return sample

    async def check_threshold(self, sample: ResourceSample) -> bool:
        """根据采样判断是否需要优化，返回本次是否执行了优化

        同一次超限只优化一次，使用比例回到阈值及以下后才会重新触发。
        """
        ratio = sample.usage_ratio

        if ratio > self.memory_threshold_ratio:
            self._low_streak = 0
            if self._above_threshold:
                return False
            self._above_threshold = True
            if not self.optimization_enabled:
                return False
            logger.warning(f"内存使用率 {ratio:.1%} 超过阈值 {self.memory_threshold_ratio:.0%}，开始优化")
            await self.optimize()
            return True

        self._above_threshold = False
        if ratio < self.low_usage_ratio:
            self._low_streak += 1
            if self._low_streak >= self.recovery_samples:
                self._low_streak = 0
                if self.optimization_enabled:
                    self._restore()
        else:
            self._low_streak = 0
        return False

    async def optimize(self) -> None:
        """执行一次优化：收缩缓存、降低并发上限、请求垃圾回收"""
        self.stats["optimizations"] += 1
        actions = []

        if self.hooks.trim_cache is not None:
            try:
                result = self.hooks.trim_cache()
                if inspect.isawaitable(result):
                    result = await result
                actions.append(f"收缩缓存{result if isinstance(result, int) else ''}")
            except Exception as e:
                logger.error(f"收缩缓存失败: {e}")

        if self.hooks.reduce_concurrency is not None:
            try:
                new_limit = self.hooks.reduce_concurrency()
                actions.append(f"并发上限降至{new_limit}")
            except Exception as e:
                logger.error(f"降低并发上限失败: {e}")

        if self._collect_garbage():
            actions.append("垃圾回收")

        logger.info(f"资源优化完成: {', '.join(actions) or '无可执行动作'}")

    def _restore(self) -> None:
        if self.hooks.restore_concurrency is None:
            return
        try:
            new_limit = self.hooks.restore_concurrency()
        except Exception as e:
            logger.error(f"恢复并发上限失败: {e}")
            return
        self.stats["recoveries"] += 1
        logger.info(f"资源占用持续偏低，并发上限恢复至{new_limit}")

    def _collect_garbage(self) -> bool:
        if self.hooks.collect_garbage is None:
            return False
        try:
            self.hooks.collect_garbage()
        except Exception as e:
            logger.error(f"垃圾回收失败: {e}")
            return False
        self.stats["gc_runs"] += 1
        self._last_gc = self.clock.now()
        return True

    async def _maybe_periodic_gc(self) -> None:
        if not self.optimization_enabled or self.gc_interval <= 0:
            return
        if self.clock.now() - self._last_gc >= self.gc_interval:
            if self._collect_garbage():
                logger.debug("已执行周期性垃圾回收")

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    @property
    def probe_available(self) -> bool:
        return not self._probe_failed

    def latest_sample(self) -> ResourceSample | None:
        return self._history[-1] if self._history else None

    def get_memory_profile(self) -> list[ResourceSample]:
        """获取采样历史（从旧到新）"""
        return list(self._history)

    def get_resource_usage(self) -> dict[str, Any]:
        """获取当前资源使用情况；尚无采样时直接读取一次探针（不计入历史）"""
        sample = self.latest_sample()
        if sample is None and not self._probe_failed:
            try:
                reading = self.probe.read()
                sample = ResourceSample(
                    heap_used=reading.heap_used,
                    heap_total=reading.heap_total,
                    timestamp=self.clock.now(),
                    cpu_percent=reading.cpu_percent,
                    cpu_cores=reading.cpu_cores,
                )
            except Exception as e:
                logger.debug(f"读取资源使用情况失败: {e}")

        if sample is None:
            return {
                "available": False,
                "memory": {"used": 0, "available": 0, "percentage": 0.0},
                "cpu": {"usage": 0.0, "cores": 0},
                "sampled_at": None,
            }

        return {
            "available": True,
            "memory": {
                "used": sample.heap_used,
                "available": max(0, sample.heap_total - sample.heap_used),
                "percentage": sample.usage_ratio * 100,
                "used_readable": format_size(sample.heap_used),
            },
            "cpu": {"usage": sample.cpu_percent, "cores": sample.cpu_cores},
            "sampled_at": sample.timestamp,
        }

    def get_stats(self) -> dict[str, Any]:
        """获取统计信息"""
        stats = self.stats.copy()
        stats.update(
            {
                "optimization_enabled": self.optimization_enabled,
                "probe_available": self.probe_available,
                "above_threshold": self._above_threshold,
                "history_size": len(self._history),
            }
        )
        return stats
