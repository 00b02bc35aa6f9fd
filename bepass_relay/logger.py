"""
中继服务 - 日志管理模块

功能:
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 控制台彩色输出（仅 TTY）
3. 日志文件轮转（按大小 / 按日期）
4. 可选的 systemd journal 输出
5. 配置文件 logging 段与 LOG_* 环境变量支持（环境变量优先）

会话相关日志由各模块自行在消息前加上 [host:port] 前缀。
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _env_bool(name: str, default) -> bool:
    return str(os.getenv(name, default)).lower() == 'true'


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到系统日志
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "bepass-relay.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict] = None) -> 'LogConfig':
        """从配置字典的 logging 段构建日志配置，LOG_* 环境变量覆盖文件配置"""
        log_conf = (data or {}).get('logging', {}) or {}
        return cls(
            level=os.getenv('LOG_LEVEL', log_conf.get('level', 'INFO')),
            log_dir=os.getenv('LOG_DIR', log_conf.get('log_dir', 'logs')),
            log_file=os.getenv('LOG_FILE', log_conf.get('log_file', 'bepass-relay.log')),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', log_conf.get('max_bytes', 10 * 1024 * 1024))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', log_conf.get('backup_count', 10))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', log_conf.get('rotation_type', 'size')),
            format_string=os.getenv('LOG_FORMAT', log_conf.get('format_string', DEFAULT_FORMAT)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', log_conf.get('enable_console', True)),
            enable_file=_env_bool('LOG_ENABLE_FILE', log_conf.get('enable_file', False)),
            enable_journal=_env_bool('LOG_ENABLE_JOURNAL', log_conf.get('enable_journal', False)),
        )


class LogFormatter(logging.Formatter):
    """支持彩色级别名称的日志格式化器"""

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
        if not self.use_color or record.levelname not in self.COLORS:
            return super().format(record)

        levelname = record.levelname
        record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def _file_handler(config: LogConfig) -> logging.Handler:
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file_path = log_dir / config.log_file

    if config.rotation_type == 'size':
        return logging.handlers.RotatingFileHandler(
            filename=log_file_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding='utf-8'
        )
    if config.rotation_type == 'date':
        return logging.handlers.TimedRotatingFileHandler(
            filename=log_file_path,
            when='midnight',
            interval=1,
            backupCount=config.backup_count,
            encoding='utf-8'
        )
    return logging.FileHandler(filename=log_file_path, encoding='utf-8')


def setup_logging(config: Optional[LogConfig] = None) -> LogConfig:
    """
    初始化根日志记录器

    Args:
        config: 日志配置，默认从环境变量加载

    Returns:
        LogConfig: 实际使用的日志配置
    """
    config = config or LogConfig.from_dict()
    level = getattr(logging, config.level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if config.enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(LogFormatter(
            fmt=config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stdout.isatty()
        ))
        root_logger.addHandler(console_handler)

    if config.enable_file:
        file_handler = _file_handler(config)
        file_handler.setFormatter(LogFormatter(fmt=config.format_string, datefmt='%Y-%m-%d %H:%M:%S'))
        root_logger.addHandler(file_handler)

    if config.enable_journal and HAS_JOURNAL:
        root_logger.addHandler(JournalHandler())

    for handler in root_logger.handlers:
        handler.setLevel(level)

    return config

