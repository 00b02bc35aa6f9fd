"""
关闭协调模块

safe_close() 是所有终止路径关闭客户端通道的唯一入口；
ShutdownCoordinator 在其之上保证每个会话只关闭一次通道。
"""

import logging

from .channel import EventChannel, ReadyState

logger = logging.getLogger('bepass-relay.shutdown')


def safe_close(channel: EventChannel, label: str = '-') -> bool:
    """
    安全关闭客户端通道

    仅当通道处于 OPEN 或 CLOSING 状态时才调用 close()，其他状态视为已终止。
    close() 抛出的异常会被捕获并记录，不会向上传播。

    Args:
        channel: 客户端通道
        label: 日志前缀（目标 host:port）

    Returns:
        bool: 是否实际调用了 close()
    """
    try:
        if channel.ready_state in (ReadyState.OPEN, ReadyState.CLOSING):
            channel.close()
            return True
    except Exception as e:
        logger.error(f"[{label}] safe_close 出错: {e}")
    return False


class ShutdownCoordinator:
    """
    幂等的"关闭客户端通道"操作

    客户端关闭、客户端错误、远端关闭、远端错误四条路径都可能并发地请求关闭，
    无论触发多少次、顺序如何，通道的 close() 至多被调用一次。

    Attributes:
        channel: 客户端通道
        label: 日志前缀（目标 host:port）
    """

    def __init__(self, channel: EventChannel, label: str = '-'):
        self.channel = channel
        self.label = label
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self, reason: str = '') -> bool:
        """
        请求关闭客户端通道

        Args:
            reason: 触发关闭的事件标签，仅用于日志

        Returns:
            bool: 本次调用是否是第一次关闭请求
        """
        if self._closed:
            logger.debug(f"[{self.label}] 通道已关闭，忽略关闭请求: {reason}")
            return False
        self._closed = True
        closed = safe_close(self.channel, self.label)
        logger.info(f"[{self.label}] 关闭客户端通道 ({reason}), 实际关闭={closed}")
        return True
