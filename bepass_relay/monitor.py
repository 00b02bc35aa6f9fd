"""
资源监控模块 - 定期记录中继进程的资源使用情况

用于发现会话或连接泄漏：活动会话数、内存、文件描述符和套接字数量
超过阈值时输出告警。
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger('bepass-relay.monitor')


class ResourceMonitor:
    """
    资源监控器

    Attributes:
        server: 提供 active_sessions 属性的中继服务端
        interval: 检查间隔（秒）
        thresholds: 告警阈值
        history: 最近的检查结果
    """

    MAX_HISTORY = 100

    def __init__(self, server, interval: float = 60.0, process: Optional[psutil.Process] = None):
        self.server = server
        self.interval = interval
        self.process = process or psutil.Process()
        self.history: List[Dict] = []

        # 告警阈值
        self.thresholds = {
            'memory_mb': 500,         # 内存阈值: 500MB
            'num_fds': 1000,          # 文件描述符阈值
            'connections': 2000,      # 套接字数量阈值
            'sessions': 1000,         # 活动会话阈值
        }

    def collect(self) -> Dict:
        """采集一次进程统计信息"""
        try:
            memory_info = self.process.memory_info()
            num_fds = self.process.num_fds() if hasattr(self.process, 'num_fds') else 0
            connections = len(self.process.net_connections()) if hasattr(self.process, 'net_connections') \
                else len(self.process.connections())
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"无法读取进程信息: {e}")
            memory_info, num_fds, connections = None, 0, 0

        return {
            'timestamp': datetime.now(),
            'sessions': self.server.active_sessions,
            'memory_mb': memory_info.rss / 1024 / 1024 if memory_info else 0.0,
            'num_fds': num_fds,
            'connections': connections,
        }

    def check_thresholds(self, stats: Dict) -> List[str]:
        warnings = []
        if stats['memory_mb'] > self.thresholds['memory_mb']:
            warnings.append(f"内存使用过高: {stats['memory_mb']:.2f} MB > {self.thresholds['memory_mb']} MB")
        if stats['num_fds'] > self.thresholds['num_fds']:
            warnings.append(f"文件描述符过多: {stats['num_fds']} > {self.thresholds['num_fds']}")
        if stats['connections'] > self.thresholds['connections']:
            warnings.append(f"连接数过多: {stats['connections']} > {self.thresholds['connections']}")
        if stats['sessions'] > self.thresholds['sessions']:
            warnings.append(f"活动会话过多: {stats['sessions']} > {self.thresholds['sessions']}")
        return warnings

    def monitor_once(self) -> Dict:
        """执行一次检查并记录日志"""
        stats = self.collect()
        stats['warnings'] = self.check_thresholds(stats)

        self.history.append(stats)
        if len(self.history) > self.MAX_HISTORY:
            self.history.pop(0)

        logger.info(
            f"资源: 会话={stats['sessions']} 内存={stats['memory_mb']:.1f}MB "
            f"fd={stats['num_fds']} 连接={stats['connections']}"
        )
        for warning in stats['warnings']:
            logger.warning(warning)
        return stats

    async def run(self):
        """周期性检查，直到任务被取消"""
        if self.interval <= 0:
            return
        while True:
            await asyncio.sleep(self.interval)
            self.monitor_once()
