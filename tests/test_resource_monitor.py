from unittest.mock import AsyncMock, Mock

import pytest

from perfcore.optimization.exceptions import ResourceError
from perfcore.optimization.resource_monitor import (
    MemoryProbe,
    OptimizationHooks,
    ProbeReading,
    PsutilMemoryProbe,
    ResourceMonitor,
    ResourceSample,
)


class StubProbe:
    """按顺序返回预设使用比例的探针，最后一个值重复使用"""

    def __init__(self, *ratios: float, total: int = 1000):
        self.ratios = list(ratios) or [0.5]
        self.total = total
        self.reads = 0

    def read(self) -> ProbeReading:
        ratio = self.ratios[min(self.reads, len(self.ratios) - 1)]
        self.reads += 1
        return ProbeReading(heap_used=int(ratio * self.total), heap_total=self.total, cpu_percent=12.5, cpu_cores=4)


class BrokenProbe:
    def __init__(self, error: Exception):
        self.error = error
        self.reads = 0

    def read(self) -> ProbeReading:
        self.reads += 1
        raise self.error


def make_hooks():
    return OptimizationHooks(
        trim_cache=AsyncMock(return_value=3),
        reduce_concurrency=Mock(return_value=4),
        restore_concurrency=Mock(return_value=5),
        collect_garbage=Mock(),
    )


def make_monitor(probe, clock, hooks=None, **kwargs):
    return ResourceMonitor(probe=probe, hooks=hooks or make_hooks(), clock=clock, **kwargs)


class TestResourceMonitorThreshold:
    """阈值判定测试类"""

    @pytest.mark.asyncio
    async def test_optimize_once_per_excursion(self, fake_clock):
        monitor = make_monitor(StubProbe(0.85, 0.85, 0.5, 0.85), fake_clock)

        results = [await monitor.check_threshold(monitor.sample()) for _ in range(4)]

        assert results == [True, False, False, True]
        assert monitor.stats["optimizations"] == 2

    @pytest.mark.asyncio
    async def test_threshold_is_strict(self, fake_clock):
        monitor = make_monitor(StubProbe(0.8), fake_clock)
        assert await monitor.check_threshold(monitor.sample()) is False

    @pytest.mark.asyncio
    async def test_optimize_calls_hooks(self, fake_clock):
        hooks = make_hooks()
        monitor = make_monitor(StubProbe(0.9), fake_clock, hooks=hooks)

        await monitor.check_threshold(monitor.sample())

        hooks.trim_cache.assert_awaited_once()
        hooks.reduce_concurrency.assert_called_once()
        hooks.collect_garbage.assert_called_once()
        assert monitor.stats["gc_runs"] == 1

    @pytest.mark.asyncio
    async def test_sync_trim_hook(self, fake_clock):
        hooks = make_hooks()
        hooks.trim_cache = Mock(return_value=2)
        monitor = make_monitor(StubProbe(0.9), fake_clock, hooks=hooks)

        await monitor.optimize()
        hooks.trim_cache.assert_called_once()

    @pytest.mark.asyncio
    async def test_hook_failure_does_not_stop_other_actions(self, fake_clock):
        hooks = make_hooks()
        hooks.trim_cache = AsyncMock(side_effect=RuntimeError("trim failed"))
        monitor = make_monitor(StubProbe(0.9), fake_clock, hooks=hooks)

        await monitor.optimize()

        hooks.reduce_concurrency.assert_called_once()
        hooks.collect_garbage.assert_called_once()

    @pytest.mark.asyncio
    async def test_recovery_after_consecutive_low_samples(self, fake_clock):
        hooks = make_hooks()
        monitor = make_monitor(StubProbe(0.2), fake_clock, hooks=hooks, recovery_samples=3)

        for _ in range(2):
            await monitor.check_threshold(monitor.sample())
        hooks.restore_concurrency.assert_not_called()

        await monitor.check_threshold(monitor.sample())
        assert hooks.restore_concurrency.call_count == 1

        # 计数已重置，需要再连续三个低采样
        for _ in range(2):
            await monitor.check_threshold(monitor.sample())
        assert hooks.restore_concurrency.call_count == 1
        await monitor.check_threshold(monitor.sample())
        assert hooks.restore_concurrency.call_count == 2
        assert monitor.stats["recoveries"] == 2

    @pytest.mark.asyncio
    async def test_mid_range_sample_resets_low_streak(self, fake_clock):
        hooks = make_hooks()
        monitor = make_monitor(StubProbe(0.2, 0.2, 0.5, 0.2, 0.2), fake_clock, hooks=hooks, recovery_samples=3)

        for _ in range(5):
            await monitor.check_threshold(monitor.sample())
        hooks.restore_concurrency.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_does_not_call_hooks(self, fake_clock):
        hooks = make_hooks()
        monitor = make_monitor(StubProbe(0.95, 0.1), fake_clock, hooks=hooks, enabled=False, recovery_samples=1)

        assert await monitor.check_threshold(monitor.sample()) is False
        await monitor.check_threshold(monitor.sample())

        hooks.trim_cache.assert_not_awaited()
        hooks.reduce_concurrency.assert_not_called()
        hooks.restore_concurrency.assert_not_called()
        hooks.collect_garbage.assert_not_called()


class TestResourceMonitorSampling:
    """采样测试类"""

    def test_stub_probe_satisfies_protocol(self):
        assert isinstance(StubProbe(), MemoryProbe)

    def test_timestamps_strictly_increasing(self, fake_clock):
        monitor = make_monitor(StubProbe(0.5), fake_clock)

        first = monitor.sample()
        second = monitor.sample()
        fake_clock.advance(5)
        third = monitor.sample()

        assert first.timestamp < second.timestamp < third.timestamp
        assert third.timestamp == fake_clock.now()

    def test_history_bounded(self, fake_clock):
        monitor = make_monitor(StubProbe(0.5), fake_clock, history_size=3)

        for _ in range(5):
            fake_clock.advance(1)
            monitor.sample()

        profile = monitor.get_memory_profile()
        assert len(profile) == 3
        assert [s.timestamp for s in profile] == [1003.0, 1004.0, 1005.0]
        assert monitor.stats["samples"] == 5

    def test_usage_ratio(self):
        assert ResourceSample(heap_used=250, heap_total=1000, timestamp=0).usage_ratio == 0.25
        assert ResourceSample(heap_used=250, heap_total=0, timestamp=0).usage_ratio == 0.0

    def test_generic_probe_error_wrapped(self, fake_clock):
        monitor = make_monitor(BrokenProbe(RuntimeError("no /proc")), fake_clock)
        with pytest.raises(ResourceError):
            monitor.sample()

    def test_invalid_sample_interval(self, fake_clock):
        with pytest.raises(ValueError):
            make_monitor(StubProbe(), fake_clock, sample_interval=0.5)

    def test_resource_usage(self, fake_clock):
        monitor = make_monitor(StubProbe(0.25), fake_clock)
        monitor.sample()

        usage = monitor.get_resource_usage()
        assert usage["available"] is True
        assert usage["memory"]["used"] == 250
        assert usage["memory"]["available"] == 750
        assert usage["memory"]["percentage"] == pytest.approx(25.0)
        assert usage["cpu"] == {"usage": 12.5, "cores": 4}

    def test_resource_usage_without_history_reads_probe(self, fake_clock):
        probe = StubProbe(0.5)
        monitor = make_monitor(probe, fake_clock)

        usage = monitor.get_resource_usage()
        assert usage["available"] is True
        assert probe.reads == 1
        assert monitor.get_memory_profile() == []

    def test_resource_usage_when_probe_broken(self, fake_clock):
        monitor = make_monitor(BrokenProbe(ResourceError("gone")), fake_clock)
        usage = monitor.get_resource_usage()
        assert usage["available"] is False
        assert usage["sampled_at"] is None

    def test_psutil_probe_reads_real_values(self):
        reading = PsutilMemoryProbe().read()
        assert reading.heap_total > 0
        assert 0 < reading.heap_used <= reading.heap_total

    def test_psutil_probe_with_budget(self):
        reading = PsutilMemoryProbe(budget_bytes=1024**4).read()
        assert reading.heap_total == 1024**4
        assert reading.heap_used > 0


class TestResourceMonitorLoop:
    """监控循环测试类"""

    @pytest.mark.asyncio
    async def test_loop_samples_on_interval(self, fake_clock, settle):
        probe = StubProbe(0.5)
        monitor = make_monitor(probe, fake_clock, sample_interval=30)
        await monitor.start()
        await settle()

        fake_clock.advance(29)
        await settle()
        assert probe.reads == 0

        fake_clock.advance(1)
        await settle()
        assert probe.reads == 1

        await monitor.stop()

    @pytest.mark.asyncio
    async def test_loop_triggers_optimization(self, fake_clock, settle):
        hooks = make_hooks()
        monitor = make_monitor(StubProbe(0.9), fake_clock, hooks=hooks, sample_interval=30)
        await monitor.start()
        await settle()

        fake_clock.advance(30)
        await settle()
        hooks.reduce_concurrency.assert_called_once()

        await monitor.stop()

    @pytest.mark.asyncio
    async def test_probe_failure_disables_optimization(self, fake_clock, settle):
        probe = BrokenProbe(ResourceError("probe gone"))
        monitor = make_monitor(probe, fake_clock, sample_interval=30)
        await monitor.start()
        await settle()

        fake_clock.advance(30)
        await settle()
        assert monitor.optimization_enabled is False
        assert monitor.probe_available is False
        assert monitor.stats["probe_failures"] == 1
        assert not monitor._monitor_task.done()

        # 探针失效后不再采样
        fake_clock.advance(30)
        await settle()
        assert probe.reads == 1

        await monitor.stop()
        assert monitor._monitor_task is None

    @pytest.mark.asyncio
    async def test_periodic_gc(self, fake_clock, settle):
        hooks = make_hooks()
        monitor = make_monitor(StubProbe(0.5), fake_clock, hooks=hooks, sample_interval=30, gc_interval=60)
        await monitor.start()
        await settle()

        fake_clock.advance(30)
        await settle()
        hooks.collect_garbage.assert_not_called()

        fake_clock.advance(30)
        await settle()
        hooks.collect_garbage.assert_called_once()

        await monitor.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, fake_clock):
        monitor = make_monitor(StubProbe(), fake_clock)
        await monitor.stop()
        await monitor.start()
        await monitor.stop()
        await monitor.stop()
