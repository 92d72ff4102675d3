import asyncio
import os
import sys

import pytest

# 添加项目根目录到Python路径
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))


class FakeClock:
    """手动推进的时钟

    sleep() 会一直挂起，直到测试调用 advance() 把时间推进到截止点。
    """

    def __init__(self, start: float = 1000.0):
        self._now = start
        self._sleepers: list[tuple[float, asyncio.Future]] = []
        self.sleep_calls: list[float] = []

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.sleep_calls.append(seconds)
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now + seconds, future))
        await future

    def advance(self, seconds: float) -> None:
        self._now += seconds
        due = [(deadline, fut) for deadline, fut in self._sleepers if deadline <= self._now]
        self._sleepers = [(deadline, fut) for deadline, fut in self._sleepers if deadline > self._now]
        for _, fut in due:
            if not fut.done():
                fut.set_result(None)


class InstantClock(FakeClock):
    """sleep() 立即返回并把时间推进相应秒数，用于观察退避时长"""

    async def sleep(self, seconds: float) -> None:
        self.sleep_calls.append(seconds)
        self._now += max(0.0, seconds)
        await asyncio.sleep(0)


async def _settle(rounds: int = 20) -> None:
    """让出事件循环若干轮，让已就绪的任务跑完"""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def instant_clock():
    return InstantClock()


@pytest.fixture
def settle():
    return _settle
