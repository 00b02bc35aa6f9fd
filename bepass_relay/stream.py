"""
通道适配模块 - 将事件驱动的客户端通道转换为可取消的数据块流

每种通道事件恰好被翻译为以下三种动作之一：
- message -> 产出一个数据块
- close   -> 结束数据流
- error   -> 以异常结束数据流

取消后 message 和 close 不再产生任何效果，但 error 仍然可以被
错误回调观察到。
"""

import asyncio
import logging
from typing import Callable, List, Optional

from .channel import EVENT_CLOSE, EVENT_ERROR, EVENT_MESSAGE, EventChannel
from .errors import ChannelError
from .shutdown import ShutdownCoordinator

logger = logging.getLogger('bepass-relay.stream')

_END = object()


class ChunkStream:
    """
    客户端数据块流

    惰性、有序、有限、不可重启。使用 ``async for chunk in stream`` 消费，
    客户端 close 时正常结束，error 时抛出 ChannelError。

    Attributes:
        channel: 客户端通道
        shutdown: 会话共享的关闭协调器
        label: 日志前缀（目标 host:port）
        cancelled: 是否已被取消
        exception: 最近一次 error 事件对应的异常
    """

    def __init__(self, channel: EventChannel, shutdown: ShutdownCoordinator, label: str = '-'):
        self.channel = channel
        self.shutdown = shutdown
        self.label = label
        self.cancelled = False
        self.exception: Optional[ChannelError] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._error_callbacks: List[Callable[[ChannelError], None]] = []
        self._finished = False

        channel.add_listener(EVENT_MESSAGE, self._on_message)
        channel.add_listener(EVENT_CLOSE, self._on_close)
        channel.add_listener(EVENT_ERROR, self._on_error)

    def add_error_callback(self, callback: Callable[[ChannelError], None]):
        """注册错误回调；取消之后到达的 error 事件同样会触发回调"""
        self._error_callbacks.append(callback)

    def _on_message(self, data: bytes):
        if self.cancelled:
            return
        self._queue.put_nowait(bytes(data))

    def _on_close(self):
        # 客户端关闭了 client -> server 方向，server -> client 方向需要由服务端关闭
        self.shutdown.close('客户端关闭')
        if self.cancelled:
            return
        self._queue.put_nowait(_END)

    def _on_error(self, exc: Exception):
        logger.warning(f"[{self.label}] 客户端通道出错: {exc}")
        if isinstance(exc, ChannelError):
            error = exc
        else:
            error = ChannelError(f"客户端通道错误: {exc}")
            error.__cause__ = exc
        self.exception = error
        for callback in list(self._error_callbacks):
            callback(error)
        self._queue.put_nowait(error)

    def cancel(self, reason: str = ''):
        """
        取消数据流

        已取消时为空操作；否则标记取消、丢弃尚未消费的数据块、
        结束正在等待的迭代，并通过关闭协调器关闭客户端通道。
        """
        if self.cancelled:
            return
        logger.info(f"[{self.label}] 数据流已取消: {reason}")
        self.cancelled = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)
        self.shutdown.close(f"数据流取消: {reason}")

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, ChannelError):
            self._finished = True
            raise item
        return item
