"""
Hubless 中继 - 日志管理模块

功能概述:
本模块提供了日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志文件轮转（按大小/按日期）
3. 结构化日志格式（时间戳、级别、连接上下文）
4. 配置文件和环境变量支持

连接上下文（connection_id、peer）保存在 contextvars 中，
每个连接的工作任务各自持有一份，并发会话之间互不覆盖。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"

_context: contextvars.ContextVar = contextvars.ContextVar('hubless_log_context', default={})


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "hubless.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    context_fields: List[str] = field(default_factory=lambda: ["connection_id", "peer"])


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加当前任务的连接上下文
    """

    def __init__(self, context_fields: Optional[List[str]] = None):
        super().__init__()
        self.context_fields = context_fields or []

    def filter(self, record):
        data = _context.get()
        record.context = " | ".join(
            f"{name}={data.get(name, '-')}" for name in self.context_fields
        )
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 未经过 ContextFilter 的记录（例如第三方库直接创建的）
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和配置（单例）
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config: Optional[LogConfig] = None
            self.context_filter: Optional[ContextFilter] = None
            self._initialized = True

    def load_config(self, data: Optional[Dict[str, Any]] = None) -> LogConfig:
        """
        从配置字典（配置文件的 logging 部分）加载日志配置，环境变量优先

        Args:
            data: 日志配置字典

        Returns:
            LogConfig: 日志配置对象
        """
        data = data or {}
        defaults = LogConfig()
        return LogConfig(
            level=os.getenv('LOG_LEVEL', data.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', data.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', data.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', data.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', data.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', data.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', data.get('format_string', defaults.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', data.get('enable_console', defaults.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', data.get('enable_file', defaults.enable_file)),
            context_fields=data.get('context_fields', defaults.context_fields),
        )

    def initialize(self, config: Optional[LogConfig] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选，默认从环境变量加载）
        """
        self.config = config or self.load_config()

        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())
        root_logger.handlers.clear()

        self.context_filter = ContextFilter(self.config.context_fields)

        if self.config.enable_console:
            self._add_console_handler(root_logger)

        if self.config.enable_file:
            Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)
            self._add_file_handler(root_logger)

    def _level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def _add_console_handler(self, logger: logging.Logger):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self._level())
        console_handler.addFilter(self.context_filter)
        console_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stdout.isatty()
        ))
        logger.addHandler(console_handler)

    def _add_file_handler(self, logger: logging.Logger):
        """
        添加文件处理器（支持轮转）

        Args:
            logger: 日志记录器
        """
        log_file_path = Path(self.config.log_dir) / self.config.log_file

        if self.config.rotation_type == 'size':
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        elif self.config.rotation_type == 'date':
            file_handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        else:
            file_handler = logging.FileHandler(
                filename=log_file_path,
                encoding='utf-8'
            )

        file_handler.setLevel(self._level())
        file_handler.addFilter(self.context_filter)
        file_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        logger.addHandler(file_handler)


def add_context(**kwargs):
    """
    为当前任务添加日志上下文

    Args:
        **kwargs: 上下文键值对
    """
    data = dict(_context.get())
    data.update(kwargs)
    _context.set(data)


def clear_context():
    """清除当前任务的日志上下文"""
    _context.set({})


def get_context() -> Dict[str, Any]:
    """返回当前任务的日志上下文"""
    return dict(_context.get())
