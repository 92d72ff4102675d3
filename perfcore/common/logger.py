# 控制台使用 rich 着色输出，文件输出为 JSON Lines（默认关闭）

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

import orjson
import structlog
import tomlkit
from rich.console import Console
from rich.text import Text
from structlog.typing import EventDict, WrappedLogger

LOG_DIR = Path("logs")
CONFIG_PATH = Path("config/perf_config.toml")
# 所有模块 logger 都挂在该包 logger 之下，handler 只装配在这里，不改动宿主的根logger
PACKAGE_LOGGER = "perfcore"

# 全局handler实例，避免重复创建（可能为None表示禁用文件日志）
_file_handler: logging.Handler | None = None
_console_handler: logging.Handler | None = None

# 动态 logger 元数据注册表 (name -> {alias:str|None, color:str|None})
_LOGGER_META_LOCK = threading.Lock()
_LOGGER_META: dict[str, dict[str, str | None]] = {}

DEFAULT_LOG_CONFIG = {
    "date_style": "m-d H:i:s",
    "log_level_style": "lite",
    "color_text": "title",
    "log_level": "INFO",
    "console_log_level": "INFO",
    "file_log_level": "DEBUG",
    "file_log_enabled": False,  # 文件日志默认关闭，嵌入宿主时不在工作目录留下文件
    "file_retention_days": 7,  # -1=永不删除
    "suppress_libraries": ["asyncio"],
    "library_log_levels": {},
}


def _register_logger_meta(name: str, *, alias: str | None = None, color: str | None = None):
    """注册/更新 logger 元数据。"""
    if not name:
        return
    with _LOGGER_META_LOCK:
        meta = _LOGGER_META.setdefault(name, {"alias": None, "color": None})
        if alias is not None:
            meta["alias"] = alias
        if color is not None:
            meta["color"] = color.upper() if color.startswith("#") else color


def get_logger_meta(name: str) -> dict[str, str | None]:
    with _LOGGER_META_LOCK:
        return _LOGGER_META.get(name, {"alias": None, "color": None}).copy()


def load_log_config(config_path: Path | None = None) -> dict:  # sourcery skip: use-contextlib-suppress
    """从配置文件的 [log] 表加载日志设置，缺省项使用默认值"""
    path = config_path or CONFIG_PATH
    config = dict(DEFAULT_LOG_CONFIG)
    try:
        if path.exists():
            with open(path, encoding="utf-8") as f:
                doc = tomlkit.load(f)
            log_table = doc.get("log")
            if log_table is not None:
                config.update(log_table.unwrap())
    except Exception as e:
        print(f"[日志系统] 加载日志配置失败: {e}")

    return config


# 导入时只使用默认配置，配置文件在 initialize_logging() 中读取
LOG_CONFIG = dict(DEFAULT_LOG_CONFIG)


def get_timestamp_format():
    """将配置中的日期格式转换为Python格式"""
    date_style = LOG_CONFIG.get("date_style", "Y-m-d H:i:s")
    format_map = {
        "Y": "%Y",
        "m": "%m",
        "d": "%d",
        "H": "%H",
        "i": "%M",
        "s": "%S",
    }

    python_format = date_style
    for php_char, python_char in format_map.items():
        python_format = python_format.replace(php_char, python_char)

    return python_format


class TimestampedFileHandler(logging.Handler):
    """JSON Lines 文件处理器

    文件名 perfcore_YYYYmmdd_HHMMSS_ffffff.log.jsonl，超过 max_bytes 后换新文件，
    换文件时删除超过 retention_days 天的旧文件（-1 表示永不删除）。
    """

    FILE_PATTERN = "perfcore_*.log.jsonl"

    def __init__(self, log_dir, max_bytes=5 * 1024 * 1024, retention_days=7, encoding="utf-8"):
        super().__init__()
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self.retention_days = retention_days
        self.encoding = encoding
        self._lock = threading.Lock()
        self._written = 0
        self.current_file: Path | None = None
        self.current_stream = None
        self._open_new_file()

    def _open_new_file(self):
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        self.current_file = self.log_dir / f"perfcore_{stamp}.log.jsonl"
        self.current_stream = open(self.current_file, "a", encoding=self.encoding)
        self._written = 0

    def _rotate(self):
        if self.current_stream:
            self.current_stream.close()
        self._open_new_file()
        if self.retention_days < 0:
            return
        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        for old in self.log_dir.glob(self.FILE_PATTERN):
            try:
                if old != self.current_file and old.stat().st_mtime < cutoff:
                    old.unlink(missing_ok=True)
            except OSError as e:
                print(f"[日志轮转] 删除旧日志失败 {old}: {e}")

    def emit(self, record):
        try:
            line = self.format(record) + "\n"
            with self._lock:
                if self._written >= self.max_bytes:
                    self._rotate()
                if self.current_stream:
                    self.current_stream.write(line)
                    self.current_stream.flush()
                    self._written += len(line.encode(self.encoding))
        except Exception:
            self.handleError(record)

    def close(self):
        with self._lock:
            if self.current_stream:
                self.current_stream.close()
                self.current_stream = None
        super().close()


def _level_of(key: str) -> int:
    name = LOG_CONFIG.get(key, LOG_CONFIG.get("log_level", "INFO"))
    return getattr(logging, str(name).upper(), logging.INFO)


def get_file_handler():
    """获取文件handler单例; 未启用文件日志时返回 None。"""
    global _file_handler

    if not LOG_CONFIG.get("file_log_enabled", False):
        return None
    if _file_handler is None:
        _file_handler = TimestampedFileHandler(LOG_DIR, retention_days=LOG_CONFIG.get("file_retention_days", 7))
        _file_handler.setLevel(_level_of("file_log_level"))
    return _file_handler


def get_console_handler():
    """获取控制台handler单例"""
    global _console_handler
    if _console_handler is None:
        _console_handler = logging.StreamHandler()
        _console_handler.setLevel(_level_of("console_log_level"))
    return _console_handler


def close_handlers():
    """安全关闭所有handler"""
    global _file_handler, _console_handler

    for handler in (_file_handler, _console_handler):
        if handler is not None:
            handler.close()
    _file_handler = None
    _console_handler = None


def _package_level() -> int:
    levels = [_level_of("console_log_level")]
    if LOG_CONFIG.get("file_log_enabled", False):
        levels.append(_level_of("file_log_level"))
    return min(levels)


def configure_third_party_loggers():
    """屏蔽或单独设置第三方库的级别，只在 initialize_logging() 中执行"""
    for lib_name in LOG_CONFIG.get("suppress_libraries", []):
        lib_logger = logging.getLogger(lib_name)
        lib_logger.setLevel(logging.CRITICAL + 1)
        lib_logger.propagate = False

    for lib_name, level_name in LOG_CONFIG.get("library_log_levels", {}).items():
        logging.getLogger(lib_name).setLevel(getattr(logging, level_name.upper(), logging.WARNING))


DEFAULT_MODULE_COLORS = {
    "cache_manager": "#00FFFF",  # 亮青色
    "scheduler": "#FFAF00",  # 橙黄色
    "batch_scheduler": "#D787D7",  # 浅紫色
    "resource_monitor": "#FF5F5F",  # 粉红色
    "metrics": "#87D7FF",  # 天蓝色
    "perf_service": "#00FF00",  # 亮绿色
    "config": "#FFFF00",  # 亮黄色
    "memory_utils": "#808080",  # 深灰色
    "logger": "#808080",
}

DEFAULT_MODULE_ALIASES = {
    "cache_manager": "缓存",
    "scheduler": "调度器",
    "batch_scheduler": "批处理",
    "resource_monitor": "资源监控",
    "metrics": "指标",
    "perf_service": "性能服务",
    "config": "配置",
    "memory_utils": "内存估算",
    "logger": "日志",
}

LEVEL_COLORS = {
    "debug": "#D78700",
    "info": "#87D7FF",
    "warning": "#FFFF00",
    "error": "#FF0000",
    "critical": "#FF00FF",
}

# 不作为 key=value 附加输出的字段
_RESERVED_KEYS = frozenset({"timestamp", "level", "logger_name", "event", "color", "alias"})


def _to_text(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict | list | tuple):
        try:
            return orjson.dumps(value, default=str).decode("utf-8")
        except (TypeError, ValueError):
            pass
    return str(value)


class ModuleColoredConsoleRenderer:
    """控制台渲染器：时间戳/级别按级别着色，模块名按模块颜色与别名显示

    log_level_style: lite 只给时间戳着色 / compact 显示级别首字母 / full 显示完整级别
    color_text: none 关闭颜色 / title 只给标题着色 / full 正文也使用模块颜色
    """

    def __init__(self, colors=True):
        color_text = LOG_CONFIG.get("color_text", "title")
        self._colors = colors and color_text != "none"
        self._full_colors = color_text == "full"
        self._level_style = LOG_CONFIG.get("log_level_style", "lite")
        self._console = Console(
            force_terminal=self._colors,
            color_system="truecolor" if self._colors else None,
            width=999,
        )

    def _style(self, color: str | None) -> str:
        return (color or "") if self._colors else ""

    def __call__(self, logger, method_name, event_dict):
        level = str(event_dict.get("level", "info")).lower()
        level_color = LEVEL_COLORS.get(level)
        parts: list[Text] = []

        timestamp = event_dict.get("timestamp")
        if timestamp:
            parts.append(Text(str(timestamp), style=self._style(level_color) if self._level_style == "lite" else ""))

        if self._level_style == "full":
            parts.append(Text(f"[{level.upper():>8}]", style=self._style(level_color)))
        elif self._level_style == "compact":
            parts.append(Text(f"[{level.upper()[:1]}]", style=self._style(level_color)))

        module_color = None
        name = event_dict.get("logger_name")
        if name:
            meta = get_logger_meta(name)
            module_color = meta.get("color") or DEFAULT_MODULE_COLORS.get(name)
            display_name = meta.get("alias") or DEFAULT_MODULE_ALIASES.get(name, name)
            parts.append(Text(f"[{display_name}]", style=self._style(module_color)))

        body_style = self._style(module_color) if self._full_colors else ""
        parts.append(Text(_to_text(event_dict.get("event", "")), style=body_style))
        parts.extend(
            Text(f"{key}={_to_text(value)}", style=body_style)
            for key, value in event_dict.items()
            if key not in _RESERVED_KEYS
        )

        with self._console.capture() as capture:
            self._console.print(Text(" ").join(parts), end="")
        return capture.get()


def add_logger_metadata(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:  # type: ignore[override]
    """structlog 自定义处理器: 注入 color / alias 字段 (用于 JSON 输出)。"""
    name = event_dict.get("logger_name")
    if name:
        meta = get_logger_meta(name)
        color = meta.get("color") or DEFAULT_MODULE_COLORS.get(name)
        alias = meta.get("alias") or DEFAULT_MODULE_ALIASES.get(name)
        if color:
            event_dict["color"] = color
        if alias:
            event_dict["alias"] = alias
    return event_dict


# 本包 logger 共用的处理器链，原地更新以便已创建的 logger 也能使用新的时间格式；
# 不调用 structlog.configure()，避免改动宿主的全局 structlog 配置
_PROCESSORS: list = []


def configure_structlog():
    """重建处理器链，加入自定义 metadata 处理器。"""
    _PROCESSORS[:] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt=get_timestamp_format(), utc=False),
        add_logger_metadata,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]


def _wrap(stdlib_name: str):
    return structlog.wrap_logger(
        logging.getLogger(stdlib_name),
        processors=_PROCESSORS,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
    )


def _build_formatters():
    file_formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(serializer=lambda obj, **kw: orjson.dumps(obj, default=str).decode()),
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
        ],
    )
    console_formatter = structlog.stdlib.ProcessorFormatter(
        processor=ModuleColoredConsoleRenderer(colors=True),
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt=get_timestamp_format(), utc=False),
            structlog.processors.format_exc_info,
        ],
    )
    return file_formatter, console_formatter


def _setup_handlers():
    """清除包logger上本模块装配的handler并重新装配"""
    configure_structlog()
    file_formatter, console_formatter = _build_formatters()

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in (_file_handler, _console_handler):
        if handler is not None and handler in package_logger.handlers:
            package_logger.removeHandler(handler)

    file_handler = get_file_handler()
    console_handler = get_console_handler()
    if file_handler is not None:
        file_handler.setFormatter(file_formatter)
        package_logger.addHandler(file_handler)
    console_handler.setFormatter(console_formatter)
    package_logger.addHandler(console_handler)
    package_logger.setLevel(_package_level())
    # 已有自己的handler，不再向宿主的根logger重复输出
    package_logger.propagate = False


_setup_handlers()

raw_logger: structlog.stdlib.BoundLogger = _wrap(PACKAGE_LOGGER)

binds: dict[str, Callable] = {}


def get_logger(name: str | None, *, color: str | None = None, alias: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取/创建 structlog logger。

    底层标准库 logger 名为 perfcore.<name>；color / alias 控制控制台模块名的显示，
    多次调用时后者覆盖前者给定的字段。
    """
    if name is None:
        return raw_logger
    if color is not None or alias is not None:
        _register_logger_meta(name, alias=alias, color=color)
    logger = binds.get(name)  # type: ignore
    if logger is None:
        logger = _wrap(f"{PACKAGE_LOGGER}.{name}").bind(logger_name=name)  # type: ignore[assignment]
        binds[name] = logger
    return logger  # type: ignore[return-value]


def initialize_logging(config_path: Path | None = None):
    """读取日志配置并重新装配handler，同时应用第三方库的级别设置

    在宿主应用的早期调用；不调用时只使用默认配置输出到控制台
    """
    global LOG_CONFIG
    LOG_CONFIG = load_log_config(config_path)
    close_handlers()
    _setup_handlers()
    configure_third_party_loggers()

    logger = get_logger("logger")
    console_level = LOG_CONFIG.get("console_log_level", LOG_CONFIG.get("log_level", "INFO"))
    logger.info(f"日志系统已初始化: 控制台级别 {console_level}")
    if LOG_CONFIG.get("file_log_enabled", False):
        logger.info(f"文件日志已启用: {LOG_DIR}，保留 {LOG_CONFIG.get('file_retention_days', 7)} 天")


def shutdown_logging():
    """优雅关闭日志系统，释放所有文件句柄"""
    logger = get_logger("logger")
    logger.info("正在关闭日志系统...")

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in (_file_handler, _console_handler):
        if handler is not None and handler in package_logger.handlers:
            package_logger.removeHandler(handler)
    close_handlers()
