"""
SOCKS-VIA - 日志管理模块

版本: 1.0.0

功能概述:
本模块为守护进程提供日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、上下文）
4. 配置文件和环境变量支持
5. 可选的 systemd 日志输出

主要功能:
1. 初始化日志系统
2. 配置日志处理器（控制台、文件、系统日志）
3. 上下文信息记录（例如监听地址）
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"


def _env_flag(name: str, default: Any) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


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
        enable_journal: 是否输出到系统日志
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "socks-via.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    rotation_type: str = "size"  # size, date, none
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: List[str] = field(default_factory=lambda: ["listen"])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LogConfig':
        """
        从配置字典创建日志配置，环境变量优先

        Args:
            data: 配置文件中的 logging 段

        Returns:
            LogConfig: 日志配置对象
        """
        defaults = cls()
        return cls(
            level=os.getenv('LOG_LEVEL', data.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', data.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', data.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', data.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', data.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', data.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', data.get('format_string', defaults.format_string)),
            enable_console=_env_flag('LOG_ENABLE_CONSOLE', data.get('enable_console', defaults.enable_console)),
            enable_file=_env_flag('LOG_ENABLE_FILE', data.get('enable_file', defaults.enable_file)),
            enable_journal=_env_flag('LOG_ENABLE_JOURNAL', data.get('enable_journal', defaults.enable_journal)),
            context_fields=data.get('context_fields', defaults.context_fields),
        )


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加上下文信息
    """

    def __init__(self, context_fields: Optional[List[str]] = None):
        super().__init__()
        self.context_fields = context_fields or []
        self.context_data = {}

    def add_context(self, **kwargs):
        self.context_data.update(kwargs)

    def clear_context(self):
        self.context_data.clear()

    def filter(self, record):
        record.context = " | ".join(
            f"{name}={self.context_data.get(name, '-')}" for name in self.context_fields
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
        # 处理器可能挂在没有过滤器的记录器上
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

    管理日志系统的初始化和上下文
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

    def initialize(self, config: Optional[LogConfig] = None, stream=None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选，默认从环境变量读取）
            stream: 控制台输出流（默认 sys.stdout）
        """
        self.config = config or LogConfig.from_dict({})
        level = getattr(logging, self.config.level.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        self.context_filter = ContextFilter(self.config.context_fields)

        if self.config.enable_console:
            stream = stream or sys.stdout
            self._add_handler(root_logger, logging.StreamHandler(stream),
                              use_color=hasattr(stream, 'isatty') and stream.isatty())

        if self.config.enable_file:
            self._add_handler(root_logger, self._create_file_handler())

        if self.config.enable_journal and HAS_JOURNAL:
            self._add_handler(root_logger, JournalHandler(), formatter=False)

    def set_level(self, level: str):
        """运行时调整全部处理器的日志级别"""
        value = getattr(logging, level.upper(), logging.INFO)
        root_logger = logging.getLogger()
        root_logger.setLevel(value)
        for handler in root_logger.handlers:
            handler.setLevel(value)

    def _create_file_handler(self) -> logging.Handler:
        """
        创建文件处理器（支持轮转）

        Returns:
            logging.Handler: 文件处理器
        """
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / self.config.log_file

        if self.config.rotation_type == 'size':
            return logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        if self.config.rotation_type == 'date':
            return logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        return logging.FileHandler(filename=log_file_path, encoding='utf-8')

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler,
                     use_color: bool = False, formatter: bool = True):
        handler.setLevel(getattr(logging, self.config.level.upper(), logging.INFO))
        # 过滤器挂在处理器上，子记录器传播上来的记录也能带上上下文
        handler.addFilter(self.context_filter)
        if formatter:
            handler.setFormatter(LogFormatter(
                fmt=self.config.format_string,
                datefmt='%Y-%m-%d %H:%M:%S',
                use_color=use_color
            ))
        logger.addHandler(handler)

    def add_context(self, **kwargs):
        if self.context_filter:
            self.context_filter.add_context(**kwargs)

    def clear_context(self):
        if self.context_filter:
            self.context_filter.clear_context()


def add_context(**kwargs):
    """添加上下文信息（便捷函数）"""
    LoggerManager().add_context(**kwargs)


def clear_context():
    """清除上下文信息（便捷函数）"""
    LoggerManager().clear_context()
