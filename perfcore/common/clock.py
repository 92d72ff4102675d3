"""
时钟抽象

缓存的 TTL、调度器的退避等待、资源监控的采样定时器都通过 Clock 取时间和挂起，
测试时可以注入手动推进的时钟。
"""

import asyncio
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """时钟接口：now() 返回单调递增的秒数，sleep() 在事件循环上挂起"""

    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """基于 time.monotonic 与 asyncio.sleep 的默认时钟"""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
