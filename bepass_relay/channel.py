"""
客户端通道模块 - 事件驱动的全双工消息通道

此模块定义了中继核心所面对的客户端通道抽象：
- ReadyState: 通道就绪状态（与 WebSocket readyState 数值一致）
- EventChannel: 事件驱动通道基类，提供 message / close / error 三种事件的注册与分发
- WebSocketChannel: 基于 websockets 库的服务端连接适配器

中继核心从不创建或销毁通道，只对其进行读、写和关闭。
"""

import asyncio
from enum import IntEnum
from typing import Callable, Dict, List, Optional

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosedError

EVENT_MESSAGE = 'message'
EVENT_CLOSE = 'close'
EVENT_ERROR = 'error'

EVENTS = (EVENT_MESSAGE, EVENT_CLOSE, EVENT_ERROR)


class ReadyState(IntEnum):
    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


class EventChannel:
    """
    事件驱动的全双工通道基类

    子类负责实现 ready_state、send() 和 close()，并在底层连接产生事件时
    调用 emit() 分发给已注册的监听器。

    Attributes:
        listeners: 事件名到回调列表的映射
    """

    def __init__(self):
        self.listeners: Dict[str, List[Callable]] = {name: [] for name in EVENTS}

    @property
    def ready_state(self) -> int:
        raise NotImplementedError

    async def send(self, data: bytes):
        raise NotImplementedError

    def close(self, code: int = 1000, reason: str = ''):
        raise NotImplementedError

    def add_listener(self, event: str, callback: Callable):
        """
        注册事件监听器

        Args:
            event: 事件名称（message / close / error）
            callback: 同步回调函数；message 回调接收 bytes，error 回调接收异常
        """
        if event not in self.listeners:
            raise ValueError(f"未知的通道事件: {event}")
        self.listeners[event].append(callback)

    def emit(self, event: str, *args):
        """按注册顺序调用监听器"""
        for callback in list(self.listeners[event]):
            callback(*args)


class WebSocketChannel(EventChannel):
    """
    WebSocket 服务端连接适配器

    将 websockets 的拉取式接口转换为事件驱动接口：serve_events() 持续读取
    消息并触发 message 事件，异常关闭时触发 error 事件，最后触发 close 事件。

    close() 是非阻塞的：它调度异步关闭握手并立即返回，此后 ready_state
    至少报告 CLOSING。
    """

    def __init__(self, connection: ServerConnection):
        super().__init__()
        self.connection = connection
        self._close_task: Optional[asyncio.Task] = None

    @property
    def ready_state(self) -> int:
        state = ReadyState(self.connection.state.value)
        if self._close_task is not None and state == ReadyState.OPEN:
            return ReadyState.CLOSING
        return state

    async def send(self, data: bytes):
        await self.connection.send(data)

    def close(self, code: int = 1000, reason: str = ''):
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self.connection.close(code, reason))

    async def serve_events(self):
        """读取客户端消息并分发事件，直到连接关闭"""
        try:
            async for message in self.connection:
                if isinstance(message, str):
                    message = message.encode('utf-8')
                self.emit(EVENT_MESSAGE, message)
        except ConnectionClosedError as e:
            self.emit(EVENT_ERROR, e)
        self.emit(EVENT_CLOSE)
