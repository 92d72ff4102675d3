"""分级并发调度器

- 三个优先级：HIGH 拥有保留槽位；MEDIUM 只在总运行数低于并发上限的一半时启动；
  LOW 进入后台 FIFO 队列，由单个任务逐个执行，拥有独立的保留槽位，不会饿死
- 去重：相同 operation_id 的在途操作返回同一个 Future，工厂函数只执行一次
- 等待基于 Future：被阻塞的操作挂在各优先级的等待队列上，槽位释放时直接移交，不轮询
- 重试：瞬时错误按 base·2^attempt 退避重试，永久错误立即向调用方传播
- 取消是协作式的：调用方取消等待只会取消它拿到的 Future，操作本身继续执行到结束
- 排队上限：排队总数超过 max_queue_size 时先丢弃最早的 LOW 操作，其次最早的 MEDIUM 等待者，
  被丢弃操作的 Future 收到 PermanentOperationError；HIGH 不会被丢弃
"""

import asyncio
import itertools
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from perfcore.common.clock import Clock, SystemClock
from perfcore.common.logger import get_logger
from perfcore.optimization.exceptions import PermanentOperationError, RetryExhaustedError, TransientOperationError
from perfcore.optimization.metrics import MetricsCollector

logger = get_logger("scheduler")

OperationFactory = Callable[[], Awaitable[Any]]
TransientPredicate = Callable[[BaseException], bool]


class Tier(IntEnum):
    """操作优先级，数值越小越优先"""

    HIGH = 0
    MEDIUM = 1
    LOW = 2


class OperationState(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


def is_transient_error(exc: BaseException) -> bool:
    """默认的瞬时错误判定：显式的瞬时错误、超时与连接错误"""
    if isinstance(exc, PermanentOperationError):
        return False
    return isinstance(exc, TransientOperationError | TimeoutError | asyncio.TimeoutError | ConnectionError)


@dataclass
class ScheduledOperation:
    """调度中的操作"""

    operation_id: str
    tier: Tier
    factory: OperationFactory
    max_retries: int
    is_transient: TransientPredicate
    future: asyncio.Future
    enqueued_at: float = 0.0
    retry_count: int = 0
    state: OperationState = OperationState.QUEUED
    task: asyncio.Task | None = field(default=None, repr=False)


class OperationScheduler:
    """带并发门控、去重与重试的操作调度器"""

    def __init__(
        self,
        max_concurrent: int = 5,
        high_concurrency: int = 2,
        max_retries: int = 3,
        retry_base_delay: float = 0.1,
        low_tier_delay: float = 0.01,
        max_queue_size: int = 100,
        is_transient: TransientPredicate | None = None,
        metrics: MetricsCollector | None = None,
        clock: Clock | None = None,
        enabled: bool = True,
    ):
        """初始化调度器

        Args:
            max_concurrent: 全局并发上限，同时作为自适应调整的上限
            high_concurrency: HIGH 操作的保留槽位数
            max_retries: 瞬时错误的最大重试次数
            retry_base_delay: 退避基数（秒）
            low_tier_delay: LOW 队列相邻操作之间的间隔（秒）
            max_queue_size: 排队（等待槽位与 LOW 队列）操作总数的上限
            is_transient: 瞬时错误判定函数
            metrics: 指标收集器
            clock: 时钟
            enabled: 为 False 时操作直接执行，不经过门控与重试
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent 必须至少为 1")

        self.ceiling = max_concurrent
        self._max_concurrent = max_concurrent
        self.high_concurrency = max(0, high_concurrency)
        self.max_retries = max(0, max_retries)
        self.retry_base_delay = max(0.0, retry_base_delay)
        self.low_tier_delay = max(0.0, low_tier_delay)
        self.max_queue_size = max(1, max_queue_size)
        self.is_transient = is_transient or is_transient_error
        self.metrics = metrics or MetricsCollector()
        self.clock = clock or SystemClock()
        self.enabled = enabled

        self._in_flight: dict[str, ScheduledOperation] = {}
        self._tasks: set[asyncio.Task] = set()
        self._id_counter = itertools.count(1)

        # 运行计数（LOW 使用独立槽位，不计入 total）
        self._running_high = 0
        self._running_medium = 0
        self._running_low = 0

        # 各优先级的等待队列，元素为 (等待 Future, 操作)
        self._waiters: dict[Tier, deque[tuple[asyncio.Future, ScheduledOperation]]] = {
            Tier.HIGH: deque(),
            Tier.MEDIUM: deque(),
        }

        # LOW 后台队列
        self._low_queue: deque[ScheduledOperation] = deque()
        self._low_event: asyncio.Event | None = None
        self._low_task: asyncio.Task | None = None

        self._is_running = False
        self._completed = 0
        self._failed = 0
        self._rejected = 0

        logger.info(
            f"操作调度器初始化: 并发上限{max_concurrent}, 高优先级保留{self.high_concurrency}, "
            f"最大重试{self.max_retries}次, 排队上限{self.max_queue_size}"
        )

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """启动 LOW 队列的后台执行任务"""
        if self._is_running:
            logger.warning("调度器已在运行")
            return
        self._is_running = True
        self._ensure_low_drainer()
        logger.info("操作调度器已启动")

    async def stop(self) -> None:
        """停止调度器：执行完 LOW 队列中剩余的操作并等待所有在途操作结束"""
        self._is_running = False

        if self._low_task is not None:
            if self._low_event is not None:
                self._low_event.set()
            try:
                await self._low_task
            except asyncio.CancelledError:
                pass
            self._low_task = None

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            logger.info(f"等待 {len(pending)} 个在途操作完成")
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("操作调度器已停止")

    # ------------------------------------------------------------------
    # 提交
    # ------------------------------------------------------------------

    def submit(
        self,
        factory: OperationFactory,
        tier: Tier = Tier.MEDIUM,
        operation_id: str | None = None,
        *,
        max_retries: int | None = None,
        is_transient: TransientPredicate | None = None,
    ) -> asyncio.Future:
        """提交操作，返回可等待的 Future

        只做登记与任务创建，可以在回调中安全地重入调用。
        相同 operation_id 的在途操作返回同一个 Future。该 Future 由所有调用方共享，
        调用方应通过 ``await asyncio.shield(future)`` 等待，否则自身被取消时会连带
        取消其他调用方的等待。
        """
        if operation_id is not None:
            existing = self._in_flight.get(operation_id)
            if existing is not None:
                if existing.future.cancelled():
                    # 之前的调用方取消了等待，操作仍在执行，换一个新的 Future 交付结果
                    existing.future = asyncio.get_running_loop().create_future()
                logger.debug(f"操作去重: {operation_id}")
                return existing.future
        else:
            name = getattr(factory, "__name__", "operation")
            operation_id = f"{tier.name.lower()}_{name}_{next(self._id_counter)}"

        loop = asyncio.get_running_loop()
        op = ScheduledOperation(
            operation_id=operation_id,
            tier=tier,
            factory=factory,
            max_retries=self.max_retries if max_retries is None else max(0, max_retries),
            is_transient=is_transient or self.is_transient,
            future=loop.create_future(),
            enqueued_at=self.clock.now(),
        )
        self._in_flight[operation_id] = op

        if not self.enabled:
            self._spawn(op, self._run_direct(op))
        elif tier == Tier.LOW:
            self._low_queue.append(op)
            self._ensure_low_drainer()
            self._low_event.set()
            self._enforce_queue_limit()
        else:
            self._spawn(op, self._run_gated(op))
        return op.future

    def _spawn(self, op: ScheduledOperation, coro) -> None:
        task = asyncio.create_task(coro, name=f"op_{op.operation_id}")
        op.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # 并发门控
    # ------------------------------------------------------------------

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def running_total(self) -> int:
        return self._running_high + self._running_medium

    def _can_start(self, tier: Tier) -> bool:
        total = self.running_total
        if tier == Tier.HIGH:
            return self._running_high < self.high_concurrency or total < self._max_concurrent
        return total < max(1, self._max_concurrent // 2)

    def _occupy(self, tier: Tier) -> None:
        if tier == Tier.HIGH:
            self._running_high += 1
        else:
            self._running_medium += 1

    def _release(self, tier: Tier) -> None:
        if tier == Tier.HIGH:
            self._running_high -= 1
        else:
            self._running_medium -= 1
        self._wake_waiters()

    def _wake_waiters(self) -> None:
        """把空出的槽位按 HIGH → MEDIUM 的顺序移交给等待者"""
        for tier in (Tier.HIGH, Tier.MEDIUM):
            queue = self._waiters[tier]
            while queue and self._can_start(tier):
                waiter, _ = queue.popleft()
                if waiter.done():
                    continue
                self._occupy(tier)
                waiter.set_result(None)

    async def _acquire(self, op: ScheduledOperation) -> None:
        tier = op.tier
        queue = self._waiters[tier]
        if not queue and self._can_start(tier):
            self._occupy(tier)
            return

        waiter = asyncio.get_running_loop().create_future()
        entry = (waiter, op)
        queue.append(entry)
        self._enforce_queue_limit()
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # 槽位已经移交过来，归还
                self._release(tier)
            else:
                try:
                    queue.remove(entry)
                except ValueError:
                    pass
            raise

    def _queued_count(self) -> int:
        return sum(len(q) for q in self._waiters.values()) + len(self._low_queue)

    def _enforce_queue_limit(self) -> None:
        """排队总数超过上限时丢弃最早的 LOW 操作，没有 LOW 时丢弃最早的 MEDIUM 等待者"""
        while self._queued_count() > self.max_queue_size:
            if self._low_queue:
                self._reject(self._low_queue.popleft())
            elif self._waiters[Tier.MEDIUM]:
                waiter, op = self._waiters[Tier.MEDIUM].popleft()
                if waiter.done():
                    continue
                waiter.set_exception(self._reject(op))
            else:
                # 只剩 HIGH 等待者，不丢弃
                logger.debug(f"排队数 {self._queued_count()} 超过上限 {self.max_queue_size}，均为高优先级操作")
                return

    def _reject(self, op: ScheduledOperation) -> PermanentOperationError:
        error = PermanentOperationError(f"任务队列已满 (上限 {self.max_queue_size})，丢弃操作 {op.operation_id}")
        self._rejected += 1
        logger.warning(f"任务队列已满，丢弃{op.tier.name}操作 {op.operation_id}")
        self._finish_with_error(op, error)
        return error

    def set_max_concurrent(self, value: int) -> int:
        """设置并发上限，限制在 [1, ceiling] 内，返回生效值"""
        new_value = min(self.ceiling, max(1, value))
        if new_value != self._max_concurrent:
            logger.info(f"并发上限调整: {self._max_concurrent} -> {new_value}")
            self._max_concurrent = new_value
            self._wake_waiters()
        return new_value

    def set_ceiling(self, value: int) -> None:
        """调整并发上限的天花板（配置变更时使用），当前值同步到新天花板"""
        self.ceiling = max(1, value)
        self._max_concurrent = self.ceiling
        self._wake_waiters()

    def decrease_concurrency(self) -> int:
        return self.set_max_concurrent(self._max_concurrent - 1)

    def increase_concurrency(self) -> int:
        return self.set_max_concurrent(self._max_concurrent + 1)

    # ------------------------------------------------------------------
    # 执行
    # ------------------------------------------------------------------

    async def _run_gated(self, op: ScheduledOperation) -> None:
        try:
            while True:
                try:
                    await self._acquire(op)
                except PermanentOperationError:
                    # 排队时因队列已满被丢弃，Future 已收到该错误
                    return
                try:
                    outcome, value = await self._attempt(op)
                finally:
                    self._release(op.tier)
                if outcome == "retry":
                    # 退避期间不占用槽位
                    await self.clock.sleep(value)
                    continue
                return
        finally:
            self._abandon(op)

    async def _run_direct(self, op: ScheduledOperation) -> None:
        try:
            op.state = OperationState.RUNNING
            start = self.clock.now()
            try:
                result = await op.factory()
            except Exception as e:
                self._record(op, start, success=False)
                self._finish_with_error(op, e)
            else:
                self._record(op, start, success=True)
                self._finish_with_result(op, result)
        finally:
            self._abandon(op)

    async def _attempt(self, op: ScheduledOperation) -> tuple[str, Any]:
        """执行一次工厂函数；返回 ("done", None) 或 ("retry", 等待秒数)"""
        op.state = OperationState.RUNNING
        start = self.clock.now()
        try:
            result = await op.factory()
        except Exception as e:
            self._record(op, start, success=False)
            if not op.is_transient(e):
                logger.debug(f"操作 {op.operation_id} 遇到不可重试错误: {e}")
                self._finish_with_error(op, e)
                return "done", None
            if op.retry_count >= op.max_retries:
                exhausted = RetryExhaustedError(op.operation_id, op.retry_count + 1, e)
                exhausted.__cause__ = e
                logger.error(f"操作 {op.operation_id} 重试耗尽: {e}")
                self._finish_with_error(op, exhausted)
                return "done", None

            wait_time = self.retry_base_delay * (2**op.retry_count)
            op.retry_count += 1
            op.state = OperationState.RETRYING
            logger.warning(
                f"操作 {op.operation_id} 失败，将在 {wait_time:.2f}s 后重试 "
                f"({op.retry_count}/{op.max_retries}): {e}"
            )
            return "retry", wait_time

        self._record(op, start, success=True)
        self._finish_with_result(op, result)
        return "done", None

    def _record(self, op: ScheduledOperation, start: float, success: bool) -> None:
        duration_ms = (self.clock.now() - start) * 1000
        self.metrics.record_latency(duration_ms)
        self.metrics.record_operation(f"scheduler.{op.tier.name.lower()}", duration_ms, success=success)

    def _finish_with_result(self, op: ScheduledOperation, result: Any) -> None:
        op.state = OperationState.COMPLETED
        self._completed += 1
        self._in_flight.pop(op.operation_id, None)
        if not op.future.done():
            op.future.set_result(result)

    def _finish_with_error(self, op: ScheduledOperation, error: BaseException) -> None:
        op.state = OperationState.FAILED
        self._failed += 1
        self._in_flight.pop(op.operation_id, None)
        if not op.future.done():
            op.future.set_exception(error)

    def _abandon(self, op: ScheduledOperation) -> None:
        """执行任务被外部取消（例如事件循环关闭）时，不让调用方永远等待"""
        if self._in_flight.get(op.operation_id) is op:
            self._in_flight.pop(op.operation_id, None)
            if not op.future.done():
                op.future.cancel()

    # ------------------------------------------------------------------
    # LOW 队列
    # ------------------------------------------------------------------

    def _ensure_low_drainer(self) -> None:
        if self._low_event is None:
            self._low_event = asyncio.Event()
        if self._low_task is None or self._low_task.done():
            self._low_task = asyncio.create_task(self._drain_low_queue(), name="low_tier_drainer")

    async def _drain_low_queue(self) -> None:
        """逐个执行 LOW 操作；队列空时等待事件，停止时先清空队列再退出"""
        while True:
            if not self._low_queue:
                if not self._is_running:
                    break
                self._low_event.clear()
                await self._low_event.wait()
                continue

            op = self._low_queue.popleft()
            self._running_low = 1
            try:
                while True:
                    outcome, value = await self._attempt(op)
                    if outcome != "retry":
                        break
                    await self.clock.sleep(value)
            except asyncio.CancelledError:
                self._abandon(op)
                raise
            except Exception as e:
                logger.error(f"低优先级操作 {op.operation_id} 执行异常: {e}")
                self._finish_with_error(op, e)
            finally:
                self._running_low = 0

            if self._low_queue and self.low_tier_delay > 0:
                await self.clock.sleep(self.low_tier_delay)

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    def is_in_flight(self, operation_id: str) -> bool:
        return operation_id in self._in_flight

    def get_queue_status(self) -> dict[str, int]:
        """获取队列状态"""
        waiting = sum(len(q) for q in self._waiters.values())
        return {
            "queued": waiting + len(self._low_queue),
            "active": self.running_total + self._running_low,
            "completed": self._completed,
            "failed": self._failed,
            "rejected": self._rejected,
            "waiting": waiting,
            "low_queue": len(self._low_queue),
            "in_flight": len(self._in_flight),
            "max_concurrent": self._max_concurrent,
        }
