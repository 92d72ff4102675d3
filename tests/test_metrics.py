import pytest

from perfcore.optimization.metrics import MetricsCollector, PerformanceMetrics, latency_factor


class TestMetricsCollector:
    """指标收集器测试类"""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector(slow_threshold_ms=100.0)

    def test_hit_rate_without_lookups(self, metrics):
        """没有任何查询时命中率为0"""
        assert metrics.hit_rate == 0.0

    def test_hit_rate(self, metrics):
        for _ in range(3):
            metrics.record_hit()
        metrics.record_miss()
        assert metrics.hit_rate == pytest.approx(0.75)

    def test_avg_latency_from_exact_totals(self, metrics):
        """平均延迟由累计值计算"""
        for value in (10.0, 20.0, 30.0):
            metrics.record_latency(value)
        assert metrics.avg_latency_ms == pytest.approx(20.0)
        assert metrics.latency_count == 3

    def test_slow_operations_counted(self, metrics):
        metrics.record_latency(99.9)
        metrics.record_latency(100.0)
        metrics.record_latency(250.0)
        assert metrics.slow_op_count == 2

    def test_evictions(self, metrics):
        metrics.record_eviction()
        metrics.record_eviction(4)
        assert metrics.evictions == 5

    def test_latency_factor_buckets(self):
        assert latency_factor(0.0, 0) == 1.0
        assert latency_factor(49.9, 3) == 1.0
        assert latency_factor(50.0, 3) == 0.8
        assert latency_factor(99.9, 3) == 0.8
        assert latency_factor(100.0, 3) == 0.6

    def test_efficiency_score_without_samples(self, metrics):
        """无延迟样本时延迟因子为1.0"""
        # 0.3 * (1 - 0.5) + 0.4 * 0 + 0.3 * 1.0
        assert metrics.efficiency_score(0.5) == pytest.approx(0.45)

    def test_efficiency_score_weighted(self, metrics):
        metrics.record_hit()
        metrics.record_miss()
        metrics.record_latency(60.0)
        # 0.3 * 0.5 + 0.4 * 0.5 + 0.3 * 0.8
        assert metrics.efficiency_score(0.5) == pytest.approx(0.59)

    def test_efficiency_score_clamps_memory_ratio(self, metrics):
        metrics.record_latency(500.0)
        assert metrics.efficiency_score(3.0) == pytest.approx(0.3 * 0.6)
        assert metrics.efficiency_score(-1.0) == pytest.approx(0.3 + 0.3 * 0.6)

    def test_record_operation(self, metrics):
        metrics.record_operation("validate", 10.0)
        metrics.record_operation("validate", 30.0, success=False)
        metrics.record_operation("parse", 5.0)

        stats = metrics.operation_stats()
        assert set(stats) == {"validate", "parse"}
        assert stats["validate"].count == 2
        assert stats["validate"].failures == 1
        assert stats["validate"].avg_duration_ms == pytest.approx(20.0)
        assert stats["validate"].max_duration_ms == 30.0
        assert stats["validate"].success_rate == pytest.approx(0.5)

    def test_operation_stats_returns_copies(self, metrics):
        metrics.record_operation("validate", 10.0)
        stats = metrics.operation_stats()
        stats["validate"].count = 100
        assert metrics.operation_stats()["validate"].count == 1

    def test_snapshot(self, metrics):
        metrics.record_hit()
        metrics.record_eviction()
        snapshot = metrics.snapshot(total_entries=3, memory_bytes=50, max_memory_bytes=100)

        assert isinstance(snapshot, PerformanceMetrics)
        assert snapshot.hits == 1
        assert snapshot.evictions == 1
        assert snapshot.total_entries == 3
        assert snapshot.memory_usage_ratio == pytest.approx(0.5)
        assert snapshot.hit_rate == 1.0
        assert snapshot.efficiency_score == pytest.approx(0.3 * 0.5 + 0.4 + 0.3)

    def test_reset(self, metrics):
        metrics.record_hit()
        metrics.record_latency(200.0)
        metrics.record_operation("x", 1.0)
        metrics.reset()

        assert metrics.hits == 0
        assert metrics.latency_count == 0
        assert metrics.slow_op_count == 0
        assert metrics.operation_stats() == {}
