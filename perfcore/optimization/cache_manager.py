"""自适应缓存管理器

有界的键值缓存：
- TTL：条目在 created_at + ttl 之后视为过期，读取时惰性清除，ttl=0 表示不自动过期
- 多因子淘汰：score = priority·K1 + age − idle·K2 − frequency·K3，分数越高越先被淘汰；
  条目较多时按候选池加轮转扫描抽样挑选，单次挑选计算的分数个数有上限
- 超过内存上限的单个条目照常写入，下次超限时最先被淘汰
- 热点提升：访问次数每达到 hot_threshold 的整数倍，优先级提升一级（数值减一，最小为 1）
- 按类别（正则）或通配符批量失效
- 统计信息：命中率、淘汰数、内存估算等

get/set 是同步的，在单个事件循环内天然原子；批量清理（trim/purge_expired）分批执行，
批次之间让出事件循环。
"""

import asyncio
import re
from dataclasses import dataclass
from fnmatch import fnmatchcase
from operator import itemgetter
from typing import Any, Generic, TypeVar

from perfcore.common.clock import Clock, SystemClock
from perfcore.common.logger import get_logger
from perfcore.common.memory_utils import SizeEstimator, estimate_conservative_size, format_size
from perfcore.config.official_configs import DEFAULT_INVALIDATION_PATTERNS, EvictionWeights
from perfcore.optimization.exceptions import CacheError
from perfcore.optimization.metrics import MetricsCollector, PerformanceMetrics

logger = get_logger("cache_manager")

T = TypeVar("T")

DEFAULT_PRIORITY = 5
FALLBACK_ENTRY_SIZE = 1024
CLEANUP_BATCH_SIZE = 50
# 抽样淘汰时保留到下一次挑选的候选数
EVICTION_POOL_SIZE = 16


@dataclass
class CacheEntry(Generic[T]):
    """缓存条目

    Attributes:
        key: 缓存键
        value: 缓存的值
        created_at: 创建时间（秒，来自注入的时钟）
        last_accessed: 最后访问时间
        ttl: 过期时间（秒），0 表示不自动过期
        access_count: 访问次数
        size: 估算大小（字节）
        priority: 优先级，1 为最高
        sequence: 插入序号，用于淘汰分数相同时的排序
    """

    key: str
    value: T
    created_at: float
    last_accessed: float
    ttl: float
    access_count: int = 0
    size: int = 0
    priority: int = DEFAULT_PRIORITY
    sequence: int = 0

    def is_expired(self, now: float) -> bool:
        return self.ttl > 0 and now - self.created_at > self.ttl


class AdaptiveCache(Generic[T]):
    """带多因子淘汰策略的有界缓存"""

    def __init__(
        self,
        max_entries: int = 1000,
        max_memory_bytes: int = 100 * 1024 * 1024,
        default_ttl: float = 300.0,
        hot_threshold: int = 5,
        invalidation_patterns: dict[str, list[str]] | None = None,
        eviction_weights: EvictionWeights | None = None,
        size_estimator: SizeEstimator | None = None,
        metrics: MetricsCollector | None = None,
        clock: Clock | None = None,
        name: str = "cache",
        eviction_sample_size: int = CLEANUP_BATCH_SIZE,
    ):
        """初始化缓存

        Args:
            max_entries: 最大缓存条目数
            max_memory_bytes: 估算内存上限（字节）
            default_ttl: 默认过期时间（秒）
            hot_threshold: 每累计多少次访问提升一级优先级
            invalidation_patterns: 类别 -> 键正则列表
            eviction_weights: 淘汰评分权重
            size_estimator: 条目大小估算函数
            metrics: 指标收集器，不传则使用独立实例
            clock: 时钟，不传则使用系统单调时钟
            name: 缓存名称，用于日志
            eviction_sample_size: 每次挑选淘汰对象时最多计算分数的条目数，条目数不超过它时为精确挑选
        """
        if max_entries < 1 or max_memory_bytes < 1:
            raise ValueError("max_entries 与 max_memory_bytes 必须为正数")

        self._entries: dict[str, CacheEntry[T]] = {}
        self.max_entries = max_entries
        self.max_memory_bytes = max_memory_bytes
        self.default_ttl = default_ttl
        self.hot_threshold = max(1, hot_threshold)
        self.weights = eviction_weights or EvictionWeights()
        self.size_estimator = size_estimator or estimate_conservative_size
        self.metrics = metrics or MetricsCollector()
        self.clock = clock or SystemClock()
        self.name = name
        self.eviction_sample_size = max(1, eviction_sample_size)

        self._memory = 0
        # 抽样淘汰的候选池与轮转扫描位置
        self._eviction_pool: list[str] = []
        self._scan_keys: list[str] = []
        self._scan_pos = 0
        self._sequence = 0
        self._patterns = self._compile_patterns(invalidation_patterns or DEFAULT_INVALIDATION_PATTERNS)

        self._cleanup_task: asyncio.Task | None = None
        self._is_closing = False

    @property
    def max_memory_bytes(self) -> int:
        return self._max_memory_bytes

    @max_memory_bytes.setter
    def max_memory_bytes(self, value: int) -> None:
        self._max_memory_bytes = value
        self._oversized = {key for key, entry in self._entries.items() if entry.size > value}

    @staticmethod
    def _compile_patterns(patterns: dict[str, list[str]]) -> dict[str, list[re.Pattern[str]]]:
        compiled = {}
        for category, expressions in patterns.items():
            try:
                compiled[category] = [re.compile(expr) for expr in expressions]
            except re.error as e:
                raise CacheError(f"失效类别 {category} 的正则表达式无效: {e}") from e
        return compiled

    # ------------------------------------------------------------------
    # 读写
    # ------------------------------------------------------------------

    def get(self, key: str) -> T | None:
        """获取缓存值，不存在或已过期返回None"""
        try:
            entry = self._entries.get(key)
            if entry is None:
                self.metrics.record_miss()
                return None

            now = self.clock.now()
            if entry.is_expired(now):
                self._remove(key)
                self.metrics.record_eviction()
                self.metrics.record_miss()
                return None

            entry.last_accessed = now
            entry.access_count += 1
            if entry.access_count % self.hot_threshold == 0 and entry.priority > 1:
                entry.priority -= 1
                logger.debug(f"[{self.name}] 热点条目提升优先级: {key} -> {entry.priority}")

            self.metrics.record_hit()
            return entry.value
        except Exception as e:
            logger.error(f"[{self.name}] 读取缓存失败，按未命中处理: {key}: {e}")
            self.metrics.record_miss()
            return None

    def set(
        self,
        key: str,
        value: T,
        ttl: float | None = None,
        priority: int = DEFAULT_PRIORITY,
        size: int | None = None,
    ) -> None:
        """设置缓存值

        Args:
            key: 缓存键
            value: 缓存值
            ttl: 自定义过期时间（秒），None 使用默认TTL
            priority: 优先级，1 为最高，数值越大越容易被淘汰
            size: 数据大小（字节），None 时使用估算函数
        """
        now = self.clock.now()
        if size is None:
            size = self._estimate_size(value)

        if key in self._entries:
            self._remove(key)

        self._sequence += 1
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            last_accessed=now,
            ttl=max(0.0, self.default_ttl if ttl is None else ttl),
            size=max(0, size),
            priority=max(1, priority),
            sequence=self._sequence,
        )
        self._entries[key] = entry
        self._memory += entry.size

        if entry.size > self.max_memory_bytes:
            self._oversized.add(key)
            logger.warning(
                f"[{self.name}] 缓存条目过大: {key} ({format_size(entry.size)} > "
                f"上限 {format_size(self.max_memory_bytes)})，已接受，下次超限时优先淘汰"
            )

        if len(self._entries) > self.max_entries or self._memory > self.max_memory_bytes:
            self._evict_until_within_bounds(protected=key)

    def _estimate_size(self, value: Any) -> int:
        try:
            return int(self.size_estimator(value))
        except Exception as e:
            logger.warning(f"[{self.name}] 估算条目大小失败，使用默认值 {FALLBACK_ENTRY_SIZE}B: {e}")
            return FALLBACK_ENTRY_SIZE

    def contains(self, key: str) -> bool:
        """不改变访问统计的存在性检查，已过期的条目视为不存在"""
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self.clock.now())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.contains(key)

    def __len__(self) -> int:
        return len(self._entries)

    def size(self) -> int:
        return len(self._entries)

    def estimated_memory(self) -> int:
        return self._memory

    def keys(self) -> list[str]:
        return list(self._entries)

    def get_entry(self, key: str) -> CacheEntry[T] | None:
        """返回条目本身（只读用途），不计入命中统计"""
        return self._entries.get(key)

    # ------------------------------------------------------------------
    # 失效
    # ------------------------------------------------------------------

    def invalidate(self, key: str) -> bool:
        """删除缓存条目，键不存在时什么也不做"""
        return self._remove(key) is not None

    def invalidate_by_pattern(self, category: str) -> int:
        """删除匹配某个类别下任一正则的所有键"""
        patterns = self._patterns.get(category)
        if patterns is None:
            logger.warning(f"[{self.name}] 未知的失效类别: {category}")
            return 0

        matched = [key for key in self._entries if any(p.search(key) for p in patterns)]
        for key in matched:
            self._remove(key)
        if matched:
            logger.debug(f"[{self.name}] 按类别 {category} 失效 {len(matched)} 个条目")
        return len(matched)

    def invalidate_matching(self, pattern: str) -> int:
        """按通配符删除键，"*" 清空全部"""
        if pattern == "*":
            count = len(self._entries)
            self.clear()
            return count

        matched = [key for key in self._entries if fnmatchcase(key, pattern)]
        for key in matched:
            self._remove(key)
        return len(matched)

    def clear(self) -> None:
        """清空缓存（不计入淘汰统计）"""
        self._entries.clear()
        self._oversized.clear()
        self._eviction_pool.clear()
        self._scan_keys = []
        self._scan_pos = 0
        self._memory = 0

    def categories(self) -> list[str]:
        return list(self._patterns)

    # ------------------------------------------------------------------
    # 淘汰
    # ------------------------------------------------------------------

    def eviction_score(self, entry: CacheEntry[T], now: float) -> float:
        """淘汰分数，越高越先被淘汰；时间单位均为秒"""
        age = max(0.0, now - entry.created_at)
        idle = max(0.0, now - entry.last_accessed)
        frequency = entry.access_count / max(age, 1.0)
        return (
            entry.priority * self.weights.priority_weight
            + age
            - idle * self.weights.idle_weight
            - frequency * self.weights.frequency_weight
        )

    def _eviction_order_key(self, entry: CacheEntry[T], now: float) -> tuple:
        # 超限条目最先；其余按分数降序，分数相同按最后访问时间、插入顺序升序
        oversized = entry.size > self.max_memory_bytes
        return (not oversized, -self.eviction_score(entry, now), entry.last_accessed, entry.sequence)

    def _pick_victim(self, now: float, protected: str | None) -> CacheEntry[T] | None:
        """选出下一个淘汰对象，每次最多计算 eviction_sample_size 个条目的分数"""
        oversized = [self._entries[key] for key in self._oversized if key != protected]
        if oversized:
            return min(oversized, key=lambda e: self._eviction_order_key(e, now))

        if len(self._entries) <= self.eviction_sample_size:
            candidates = [entry for entry in self._entries.values() if entry.key != protected]
        else:
            candidates = [entry for entry in self._sample_candidates() if entry.key != protected]
        if not candidates:
            return None

        candidates.sort(key=lambda e: self._eviction_order_key(e, now))
        # 次优的候选留到下一次挑选时继续参与比较
        self._eviction_pool = [entry.key for entry in candidates[1 : EVICTION_POOL_SIZE + 1]]
        return candidates[0]

    def _sample_candidates(self) -> list[CacheEntry[T]]:
        """候选池里留下的条目，加上轮转扫描的下一段键，总数不超过 eviction_sample_size"""
        candidates: list[CacheEntry[T]] = []
        seen: set[str] = set()
        for key in self._eviction_pool:
            entry = self._entries.get(key)
            if entry is not None and key not in seen:
                seen.add(key)
                candidates.append(entry)

        remaining = len(self._entries)
        while len(candidates) < self.eviction_sample_size and remaining > 0:
            if self._scan_pos >= len(self._scan_keys):
                self._scan_keys = list(self._entries)
                self._scan_pos = 0
            key = self._scan_keys[self._scan_pos]
            self._scan_pos += 1
            remaining -= 1
            entry = self._entries.get(key)
            if entry is not None and key not in seen:
                seen.add(key)
                candidates.append(entry)
        return candidates

    def _evict_until_within_bounds(self, protected: str | None = None) -> int:
        """逐个淘汰分数最高的条目，直到条目数与内存都回到上限以内

        刚写入的超限条目不会淘汰自己，也不会为了它把其他条目挤出去（只计算其余条目的内存）
        """
        now = self.clock.now()
        exempt = self._entries[protected].size if protected in self._oversized else 0
        evicted = 0
        while len(self._entries) > self.max_entries or self._memory - exempt > self.max_memory_bytes:
            victim = self._pick_victim(now, protected)
            if victim is None:
                # 只剩被保护的新条目
                break
            self._remove(victim.key)
            evicted += 1
            logger.debug(
                f"[{self.name}] 淘汰缓存条目: {victim.key} "
                f"(优先级{victim.priority}, 访问{victim.access_count}次)"
            )
        if evicted:
            self.metrics.record_eviction(evicted)
        return evicted

    def _within(self, max_entries: int, max_memory: int) -> bool:
        return len(self._entries) <= max_entries and self._memory <= max_memory

    async def trim(self, target_ratio: float = 0.8, chunk_size: int = CLEANUP_BATCH_SIZE) -> int:
        """分批淘汰，直到条目数与内存都不超过上限的 target_ratio

        排序键按 chunk_size 分段计算、每轮只排序一次，淘汰同样按 chunk_size 分批，
        段与段之间让出事件循环。

        Returns:
            淘汰的条目数
        """
        target_entries = int(self.max_entries * target_ratio)
        target_memory = int(self.max_memory_bytes * target_ratio)
        chunk_size = max(1, chunk_size)
        evicted = 0

        while self._entries and not self._within(target_entries, target_memory):
            now = self.clock.now()
            keys = list(self._entries)
            scored: list[tuple[tuple, CacheEntry[T]]] = []
            for i in range(0, len(keys), chunk_size):
                for key in keys[i : i + chunk_size]:
                    entry = self._entries.get(key)
                    if entry is not None:
                        scored.append((self._eviction_order_key(entry, now), entry))
                await asyncio.sleep(0)
            scored.sort(key=itemgetter(0))

            round_evicted = 0
            batch = 0
            for _, entry in scored:
                if self._within(target_entries, target_memory):
                    break
                # 让出期间被覆盖或删除的条目跳过
                if self._entries.get(entry.key) is not entry:
                    continue
                self._remove(entry.key)
                batch += 1
                if batch >= chunk_size:
                    self.metrics.record_eviction(batch)
                    round_evicted += batch
                    batch = 0
                    await asyncio.sleep(0)
            if batch:
                self.metrics.record_eviction(batch)
                round_evicted += batch

            evicted += round_evicted
            if round_evicted == 0:
                break

        if evicted:
            logger.info(
                f"[{self.name}] 缓存收缩完成: 淘汰 {evicted} 项，剩余 {len(self._entries)} 项 / "
                f"{format_size(self._memory)}"
            )
        return evicted

    async def purge_expired(self, chunk_size: int = CLEANUP_BATCH_SIZE) -> int:
        """分批清理所有已过期的条目"""
        now = self.clock.now()
        expired_keys = [key for key, entry in self._entries.items() if entry.is_expired(now)]

        cleaned = 0
        for i in range(0, len(expired_keys), chunk_size):
            for key in expired_keys[i : i + chunk_size]:
                entry = self._entries.get(key)
                # 批次间隙里可能已被重新写入
                if entry is not None and entry.is_expired(now):
                    self._remove(key)
                    cleaned += 1
            if i + chunk_size < len(expired_keys):
                await asyncio.sleep(0)

        if cleaned:
            self.metrics.record_eviction(cleaned)
            logger.debug(f"[{self.name}] 清理过期条目: {cleaned} 项")
        return cleaned

    def _remove(self, key: str) -> CacheEntry[T] | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._memory -= entry.size
            self._oversized.discard(key)
        return entry

    # ------------------------------------------------------------------
    # 统计与后台任务
    # ------------------------------------------------------------------

    def stats(self) -> PerformanceMetrics:
        """获取统计快照，已过期但尚未清理的条目不计入"""
        now = self.clock.now()
        live = sum(1 for entry in self._entries.values() if not entry.is_expired(now))
        return self.metrics.snapshot(
            total_entries=live,
            memory_bytes=self._memory,
            max_memory_bytes=self.max_memory_bytes,
        )

    async def start_cleanup_task(self, interval: float = 60) -> None:
        """启动定期清理任务

        Args:
            interval: 清理间隔（秒）
        """
        if self._cleanup_task is not None:
            logger.warning(f"[{self.name}] 清理任务已在运行")
            return

        self._is_closing = False

        async def cleanup_loop():
            while not self._is_closing:
                try:
                    await self.clock.sleep(interval)
                    if self._is_closing:
                        break

                    await self.purge_expired()
                    stats = self.stats()
                    logger.info(
                        f"[{self.name}] 缓存统计: {stats.total_entries}项, 命中率{stats.hit_rate:.2%}, "
                        f"内存 {format_size(stats.memory_bytes)}/{format_size(stats.max_memory_bytes)}, "
                        f"淘汰 {stats.evictions} 次"
                    )
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"[{self.name}] 清理任务异常: {e}")

        self._cleanup_task = asyncio.create_task(cleanup_loop(), name=f"{self.name}_cleanup")
        logger.info(f"[{self.name}] 缓存清理任务已启动，间隔{interval}秒")

    async def stop_cleanup_task(self) -> None:
        """停止清理任务"""
        self._is_closing = True

        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info(f"[{self.name}] 缓存清理任务已停止")
