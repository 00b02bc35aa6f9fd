"""
bepass 中继核心

将已升级的 WebSocket 客户端通道桥接到调用方指定的 host:port 原始 TCP 连接，
双向复制字节直到任意一侧终止。第一个出站连接未交付任何字节即结束时，
经由进程级回退出口地址重试一次。

使用示例：
    from bepass_relay import OutboundConnector, RelaySession, init_fallback_address

    connector = OutboundConnector(init_fallback_address())
    session = RelaySession(channel, 'example.com', 443, connector)
    await session.run()
"""

from .channel import EventChannel, ReadyState, WebSocketChannel
from .connector import (
    OutboundConnector,
    RemoteConnection,
    get_fallback_address,
    init_fallback_address,
)
from .errors import ChannelError, ChannelNotOpenError, RelayError, RemoteConnectError
from .session import RelayState, RelaySession
from .shutdown import ShutdownCoordinator, safe_close
from .stream import ChunkStream

__version__ = '1.0.0'

__all__ = [
    'EventChannel',
    'ReadyState',
    'WebSocketChannel',
    'OutboundConnector',
    'RemoteConnection',
    'get_fallback_address',
    'init_fallback_address',
    'ChannelError',
    'ChannelNotOpenError',
    'RelayError',
    'RemoteConnectError',
    'RelayState',
    'RelaySession',
    'ShutdownCoordinator',
    'safe_close',
    'ChunkStream',
]
