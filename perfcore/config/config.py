from pathlib import Path

import tomlkit
from pydantic import Field
from tomlkit.exceptions import ParseError

from perfcore.common.logger import get_logger
from perfcore.config.config_base import ConfigError, ValidatedConfigBase
from perfcore.config.official_configs import (
    BatchConfig,
    CacheConfig,
    MetricsConfig,
    MonitorConfig,
    SchedulerConfig,
)

logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path("config/perf_config.toml")


class PerfConfig(ValidatedConfigBase):
    """总配置类"""

    enable_caching: bool = Field(default=True, description="是否启用缓存")
    cache: CacheConfig = Field(default_factory=CacheConfig, description="缓存配置")
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig, description="调度器配置")
    batch: BatchConfig = Field(default_factory=BatchConfig, description="批处理配置")
    monitor: MonitorConfig = Field(default_factory=MonitorConfig, description="资源监控配置")
    metrics: MetricsConfig = Field(default_factory=MetricsConfig, description="指标配置")


def load_config(config_path: str | Path | None = None) -> PerfConfig:
    """
    加载配置文件
    Args:
        config_path: 配置文件路径，默认 config/perf_config.toml；文件不存在时返回默认配置
    Returns:
        PerfConfig对象
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        logger.info(f"未找到配置文件 {path}，使用默认配置")
        return PerfConfig()

    try:
        with open(path, encoding="utf-8") as f:
            config_data = tomlkit.load(f)
    except ParseError as e:
        raise ConfigError(f"配置文件 {path} 不是合法的 TOML: {e}") from e

    # 先将 tomlkit 对象转换为纯 Python 字典；[log] 由日志系统单独读取
    config_dict = config_data.unwrap()
    config_dict.pop("log", None)

    try:
        config = PerfConfig.from_dict(config_dict)
    except ConfigError as e:
        logger.critical(f"配置文件解析失败: {e}")
        raise

    logger.info(f"已加载配置文件 {path}")
    return config
