"""批处理合并器

把同类操作按 (operation_type, tier) 分组，组内数量达到 batch_size 或周期刷新时，
按不超过 batch_size 的块交给 OperationScheduler 作为一个整体执行：
- 每种操作类型注册一个处理函数 async (payloads: list) -> list，按顺序返回每个负载的结果
- 块内结果按提交顺序交付（Future 与回调）
- 块执行失败时，块内每个成员收到同一个 BatchError
"""

import asyncio
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from perfcore.common.clock import Clock, SystemClock
from perfcore.common.logger import get_logger
from perfcore.optimization.exceptions import BatchError
from perfcore.optimization.scheduler import OperationScheduler, Tier

logger = get_logger("batch_scheduler")

BatchHandler = Callable[[list[Any]], Awaitable[list[Any]]]
GroupKey = tuple[str, Tier]


@dataclass
class BatchOperation:
    """批量操作"""

    operation_type: str
    payload: Any = None
    tier: Tier = Tier.MEDIUM
    callback: Callable[[Any], Any] | None = None
    future: asyncio.Future | None = None
    timestamp: float = 0.0


@dataclass
class BatchStats:
    """批处理统计"""

    total_operations: int = 0
    batched_operations: int = 0
    chunk_count: int = 0
    error_count: int = 0
    pending_operations: int = 0
    last_batch_size: int = 0
    last_batch_duration: float = 0.0

    @property
    def avg_batch_size(self) -> float:
        return self.batched_operations / self.chunk_count if self.chunk_count > 0 else 0.0


class BatchProcessor:
    """按类型与优先级合并操作的批处理器"""

    def __init__(
        self,
        scheduler: OperationScheduler,
        batch_size: int = 10,
        flush_interval: float = 0.05,
        enabled: bool = True,
        clock: Clock | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size 必须至少为 1")

        self.scheduler = scheduler
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.enabled = enabled
        self.clock = clock or SystemClock()

        self._handlers: dict[str, BatchHandler] = {}
        self._groups: dict[GroupKey, list[BatchOperation]] = {}
        self._flush_scheduled: set[GroupKey] = set()
        self._chunk_futures: set[asyncio.Future] = set()
        self._chunk_ids = itertools.count(1)

        self._flush_task: asyncio.Task | None = None
        self._is_running = False
        self.stats = BatchStats()

        logger.info(f"批处理器初始化: 批次大小{batch_size}, 刷新间隔{flush_interval * 1000:.0f}ms")

    def register_handler(self, operation_type: str, handler: BatchHandler) -> None:
        """注册某类操作的批量处理函数"""
        self._handlers[operation_type] = handler

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """启动周期刷新任务"""
        if self._is_running:
            logger.warning("批处理器已在运行")
            return

        self._is_running = True
        self._flush_task = asyncio.create_task(self._flush_loop(), name="batch_flush_loop")
        logger.info("批处理器已启动")

    async def stop(self) -> None:
        """停止批处理器，刷新并等待所有剩余操作"""
        self._is_running = False

        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        await self.flush_all(wait=True)
        logger.info("批处理器已停止")

    async def _flush_loop(self) -> None:
        while self._is_running:
            try:
                await self.clock.sleep(self.flush_interval)
                await self.flush_all()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"批处理刷新循环异常: {e}")

    # ------------------------------------------------------------------
    # 提交
    # ------------------------------------------------------------------

    def submit(
        self,
        operation_type: str,
        payload: Any = None,
        tier: Tier = Tier.MEDIUM,
        callback: Callable[[Any], Any] | None = None,
    ) -> asyncio.Future:
        return self.enqueue(BatchOperation(operation_type=operation_type, payload=payload, tier=tier, callback=callback))

    def enqueue(self, operation: BatchOperation) -> asyncio.Future:
        """加入批次，返回该操作结果的 Future

        只登记并在事件循环上安排刷新，不会在调用栈内直接执行批次。
        """
        loop = asyncio.get_running_loop()
        operation.future = loop.create_future()
        operation.timestamp = self.clock.now()
        self.stats.total_operations += 1

        key = (operation.operation_type, operation.tier)
        if not self.enabled:
            self._dispatch_chunk(key, [operation])
            return operation.future

        group = self._groups.setdefault(key, [])
        group.append(operation)
        if len(group) >= self.batch_size and key not in self._flush_scheduled:
            self._flush_scheduled.add(key)
            loop.call_soon(self._flush_group, key)
        return operation.future

    # ------------------------------------------------------------------
    # 刷新与执行
    # ------------------------------------------------------------------

    async def flush_all(self, wait: bool = False) -> None:
        """刷新所有分组；wait=True 时等待已派发的块全部结束"""
        for key in list(self._groups):
            self._flush_group(key)

        if wait and self._chunk_futures:
            # 块 Future 可能与其他调用方共享，等待方被取消时不能连带取消它们
            await asyncio.gather(*(asyncio.shield(f) for f in list(self._chunk_futures)), return_exceptions=True)

    def _flush_group(self, key: GroupKey) -> None:
        self._flush_scheduled.discard(key)
        group = self._groups.pop(key, None)
        if not group:
            return
        for i in range(0, len(group), self.batch_size):
            self._dispatch_chunk(key, group[i : i + self.batch_size])

    def _dispatch_chunk(self, key: GroupKey, chunk: list[BatchOperation]) -> None:
        operation_type, tier = key
        payloads = [op.payload for op in chunk]
        chunk_id = f"batch_{operation_type}_{tier.name.lower()}_{next(self._chunk_ids)}"

        future = self.scheduler.submit(
            partial(self._execute_chunk, operation_type, payloads),
            tier=tier,
            operation_id=chunk_id,
        )
        self._chunk_futures.add(future)
        future.add_done_callback(self._chunk_futures.discard)
        future.add_done_callback(partial(self._deliver, operation_type, chunk))

    async def _execute_chunk(self, operation_type: str, payloads: list[Any]) -> list[Any]:
        handler = self._handlers.get(operation_type)
        if handler is None:
            raise BatchError(f"未注册的批处理类型: {operation_type}", operation_type, len(payloads))

        start = self.clock.now()
        results = await handler(payloads)
        self.stats.last_batch_duration = self.clock.now() - start

        if not isinstance(results, list) or len(results) != len(payloads):
            got = len(results) if isinstance(results, list) else type(results).__name__
            raise BatchError(
                f"批处理 {operation_type} 返回结果数量不匹配: 期待 {len(payloads)}，实际 {got}",
                operation_type,
                len(payloads),
            )
        return results

    def _deliver(self, operation_type: str, chunk: list[BatchOperation], future: asyncio.Future) -> None:
        """把块的执行结果按提交顺序分发给每个成员"""
        self.stats.chunk_count += 1
        self.stats.batched_operations += len(chunk)
        self.stats.last_batch_size = len(chunk)

        if future.cancelled():
            error = BatchError(f"批处理 {operation_type} 被取消", operation_type, len(chunk))
        elif future.exception() is not None:
            cause = future.exception()
            if isinstance(cause, BatchError):
                error = cause
            else:
                error = BatchError(f"批处理 {operation_type} 执行失败: {cause}", operation_type, len(chunk))
                error.__cause__ = cause
        else:
            error = None

        if error is not None:
            self.stats.error_count += 1
            logger.error(f"批量操作执行失败 ({len(chunk)}个): {error}")
            for op in chunk:
                if op.future and not op.future.done():
                    op.future.set_exception(error)
            return

        for op, result in zip(chunk, future.result()):
            if op.future and not op.future.done():
                op.future.set_result(result)
            if op.callback:
                try:
                    op.callback(result)
                except Exception as e:
                    logger.warning(f"回调执行失败: {e}")

        logger.debug(f"批量执行完成: {operation_type} {len(chunk)}个操作")

    def pending_count(self) -> int:
        return sum(len(group) for group in self._groups.values())

    def get_stats(self) -> BatchStats:
        """获取统计信息"""
        return BatchStats(
            total_operations=self.stats.total_operations,
            batched_operations=self.stats.batched_operations,
            chunk_count=self.stats.chunk_count,
            error_count=self.stats.error_count,
            pending_operations=self.pending_count(),
            last_batch_size=self.stats.last_batch_size,
            last_batch_duration=self.stats.last_batch_duration,
        )
