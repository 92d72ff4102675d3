import logging

from perfcore.common import logger as log_module
from perfcore.common.logger import get_logger, get_logger_meta, load_log_config


class TestLogger:
    """日志系统测试类"""

    def test_get_logger_is_cached(self):
        assert get_logger("cache_manager") is get_logger("cache_manager")

    def test_alias_and_color_registered(self):
        get_logger("test_plugin", color="#ff0000", alias="插件")
        meta = get_logger_meta("test_plugin")
        assert meta == {"alias": "插件", "color": "#FF0000"}

    def test_unknown_logger_meta(self):
        assert get_logger_meta("never_registered") == {"alias": None, "color": None}

    def test_load_log_config_defaults_when_missing(self, tmp_path):
        config = load_log_config(tmp_path / "missing.toml")
        assert config == log_module.DEFAULT_LOG_CONFIG
        assert config is not log_module.DEFAULT_LOG_CONFIG

    def test_load_log_config_reads_log_table(self, tmp_path):
        path = tmp_path / "perf_config.toml"
        path.write_text('[cache]\nmax_entries = 5\n[log]\nlog_level = "DEBUG"\nfile_retention_days = 3\n', encoding="utf-8")

        config = load_log_config(path)
        assert config["log_level"] == "DEBUG"
        assert config["file_retention_days"] == 3
        assert config["file_log_enabled"] is False

    def test_timestamp_format(self, monkeypatch):
        monkeypatch.setitem(log_module.LOG_CONFIG, "date_style", "Y-m-d H:i:s")
        assert log_module.get_timestamp_format() == "%Y-%m-%d %H:%M:%S"


class TestLoggerIsolation:
    """导入与初始化不改动宿主日志配置的测试"""

    def test_handlers_attached_to_package_logger_only(self):
        root_handlers = logging.getLogger().handlers
        package_logger = logging.getLogger(log_module.PACKAGE_LOGGER)

        assert log_module._console_handler in package_logger.handlers
        assert log_module._console_handler not in root_handlers
        assert package_logger.propagate is False

    def test_import_uses_default_config_without_reading_file(self):
        assert log_module.LOG_CONFIG["file_log_enabled"] is False
        assert log_module._file_handler is None

    def test_module_logger_is_child_of_package_logger(self):
        logger = get_logger("isolation_check")
        assert logger._logger.name == "perfcore.isolation_check"

    def test_initialize_logging_keeps_root_logger_untouched(self, tmp_path, monkeypatch):
        monkeypatch.setattr(log_module, "configure_third_party_loggers", lambda: None)
        root_logger = logging.getLogger()
        before = list(root_logger.handlers)
        path = tmp_path / "perf_config.toml"
        path.write_text('[log]\nconsole_log_level = "WARNING"\n', encoding="utf-8")

        try:
            log_module.initialize_logging(path)
            assert root_logger.handlers == before
            assert log_module._console_handler in logging.getLogger(log_module.PACKAGE_LOGGER).handlers
            assert log_module._console_handler.level == logging.WARNING
        finally:
            log_module.initialize_logging(tmp_path / "missing.toml")
