from typing import Literal

from pydantic import Field

from perfcore.config.config_base import ValidatedConfigBase

"""
须知：
1. 本文件中记录了所有的配置项，时间单位统一为秒，大小单位为字节
2. 所有配置类必须继承自ValidatedConfigBase进行Pydantic验证
3. 新增的配置段需要同时加入 PerfConfig 与 template/perf_config.toml
"""

DEFAULT_INVALIDATION_PATTERNS: dict[str, list[str]] = {
    "validation": [r"^validation:", r"^diagnostics:"],
    "completion": [r"^completion:"],
    "document": [r"^document:", r"^symbols:", r"^hover:"],
    "parse": [r"^parse:", r"^ast:"],
}


class EvictionWeights(ValidatedConfigBase):
    """淘汰评分权重: score = priority·K1 + age − idle·K2 − frequency·K3"""

    priority_weight: float = Field(default=10.0, ge=0, description="K1: 优先级权重（优先级数值越大越容易被淘汰）")
    idle_weight: float = Field(default=0.5, ge=0, description="K2: 空闲时长权重（秒）")
    frequency_weight: float = Field(default=5.0, ge=0, description="K3: 访问频率权重（次/秒）")


class CacheConfig(ValidatedConfigBase):
    """缓存配置类"""

    max_entries: int = Field(default=1000, ge=1, description="最大缓存条目数")
    max_memory_bytes: int = Field(default=100 * 1024 * 1024, ge=1, description="缓存估算内存上限（字节）")
    default_ttl: float = Field(default=300.0, ge=0, description="默认过期时间（秒），0 表示不自动过期")
    hot_threshold: int = Field(default=5, ge=1, description="每累计多少次访问提升一级优先级")
    eviction_weights: EvictionWeights = Field(default_factory=EvictionWeights, description="淘汰评分权重")
    invalidation_patterns: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_INVALIDATION_PATTERNS.items()},
        description="按类别失效时使用的键正则表达式",
    )
    size_strategy: Literal["conservative", "deep", "pickle", "json"] = Field(
        default="conservative", description="条目大小估算策略"
    )
    cleanup_interval: float = Field(default=60.0, ge=0, description="过期条目清理间隔（秒），0 表示不启动清理任务")


class SchedulerConfig(ValidatedConfigBase):
    """调度器配置类"""

    max_concurrent_operations: int = Field(default=5, ge=1, description="全局最大并发操作数（同时也是自适应调整的上限）")
    high_concurrency: int = Field(default=2, ge=0, description="高优先级操作的保留并发槽位数")
    max_retries: int = Field(default=3, ge=0, description="瞬时错误的最大重试次数")
    retry_base_delay: float = Field(default=0.1, ge=0, description="重试退避基数（秒），第 n 次重试等待 base·2^n")
    low_tier_delay: float = Field(default=0.01, ge=0, description="低优先级队列相邻任务的间隔（秒）")
    max_queue_size: int = Field(default=100, ge=1, description="排队操作总数上限；超出时先丢弃最早的低优先级操作")
    enable_async_processing: bool = Field(default=True, description="是否启用并发门控与重试；关闭后操作直接执行")


class BatchConfig(ValidatedConfigBase):
    """批处理配置类"""

    enabled: bool = Field(default=True, description="是否启用批处理合并")
    batch_size: int = Field(default=10, ge=1, description="单个批次的最大操作数")
    flush_interval: float = Field(default=0.05, gt=0, description="周期刷新间隔（秒）")


class MonitorConfig(ValidatedConfigBase):
    """资源监控配置类"""

    optimization_enabled: bool = Field(default=True, description="是否启用自适应优化")
    sample_interval: float = Field(default=30.0, ge=1, description="资源采样间隔（秒），不允许小于1秒")
    gc_interval: float = Field(default=300.0, ge=0, description="周期性垃圾回收间隔（秒），0 表示关闭")
    memory_threshold_ratio: float = Field(default=0.8, gt=0, le=1, description="触发优化的内存使用比例")
    low_usage_ratio: float = Field(default=0.3, ge=0, le=1, description="视为低负载的内存使用比例")
    recovery_samples: int = Field(default=3, ge=1, description="连续多少个低负载采样后恢复一级并发")
    history_size: int = Field(default=100, ge=1, description="保留的采样历史条数")
    memory_budget_bytes: int = Field(
        default=0, ge=0, description="进程内存预算（字节）；0 表示按系统内存计算使用比例"
    )


class MetricsConfig(ValidatedConfigBase):
    """指标配置类"""

    slow_threshold_ms: float = Field(default=100.0, gt=0, description="慢操作阈值（毫秒）")
