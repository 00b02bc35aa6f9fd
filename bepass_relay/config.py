"""
配置模块 - 从 YAML 文件加载中继服务配置

配置文件示例（config.yaml）:

    relay:
      host: 0.0.0.0
      port: 8080
      connect_path: /connect
      fallback_addresses:
        - cdn-b100.xn--b6gac.eu.org
      read_chunk_size: 65536
      monitor_interval: 60

    logging:
      level: INFO
"""

from dataclasses import dataclass, field
from typing import List

import yaml

from .connector import DEFAULT_FALLBACK_ADDRESSES, addresses_from


def load_config(path: str) -> dict:
    """
    从 YAML 文件加载配置

    参数:
        path: 配置文件路径

    返回:
        配置字典（空文件返回空字典）
    """
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


@dataclass
class RelayConfig:
    """中继服务配置"""
    host: str = '0.0.0.0'  # 监听地址
    port: int = 8080  # 监听端口
    connect_path: str = '/connect'  # 隧道入口路径
    fallback_addresses: List[str] = field(default_factory=lambda: list(DEFAULT_FALLBACK_ADDRESSES))  # 回退出口地址列表
    read_chunk_size: int = 65536  # 远端单次读取大小
    monitor_interval: float = 0  # 资源监控间隔（秒），0 表示禁用

    def __post_init__(self):
        self.port = int(self.port)
        self.read_chunk_size = int(self.read_chunk_size)
        self.monitor_interval = float(self.monitor_interval)
        if not 0 <= self.port <= 65535:
            raise ValueError(f"无效的监听端口: {self.port}")
        if self.read_chunk_size <= 0:
            raise ValueError(f"无效的读取大小: {self.read_chunk_size}")
        if not self.connect_path.startswith('/'):
            self.connect_path = '/' + self.connect_path

    @classmethod
    def from_dict(cls, data: dict) -> 'RelayConfig':
        """从配置字典的 relay 段构建配置"""
        relay_conf = (data or {}).get('relay', {}) or {}
        return cls(
            host=relay_conf.get('host', '0.0.0.0'),
            port=relay_conf.get('port', 8080),
            connect_path=relay_conf.get('connect_path', '/connect'),
            fallback_addresses=addresses_from(relay_conf.get('fallback_addresses')),
            read_chunk_size=relay_conf.get('read_chunk_size', 65536),
            monitor_interval=relay_conf.get('monitor_interval', 0),
        )
