#!/usr/bin/env python3
"""
中继服务端 - WebSocket 到 TCP 的隧道入口

协议:
1. 客户端以 WebSocket 升级请求访问 /connect?host=<目标主机>&port=<目标端口>
2. 升级完成后，客户端发送的二进制消息被原样写入到目标 TCP 连接
3. 目标返回的数据以二进制消息原样发回客户端
4. 任意一侧终止后，服务端关闭 WebSocket

其他路径返回 404。
"""

import argparse
import asyncio
import logging
from http import HTTPStatus
from typing import Optional, Set, Tuple, Union
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request

from .channel import WebSocketChannel
from .config import RelayConfig, load_config
from .connector import OutboundConnector, init_fallback_address
from .logger import LogConfig, setup_logging
from .monitor import ResourceMonitor
from .session import RelaySession

logger = logging.getLogger('bepass-relay.server')


def parse_destination(path: str) -> Tuple[str, Union[int, str]]:
    """
    从请求路径的查询字符串中提取目标地址

    缺失的主机视为空字符串；无法解析为整数的端口原样保留，
    由传输层在连接时拒绝。

    Example:
        >>> parse_destination('/connect?host=example.com&port=443')
        ('example.com', 443)
    """
    query = parse_qs(urlsplit(path).query, keep_blank_values=True)
    host = query.get('host', [''])[0]
    port = query.get('port', [''])[0]
    try:
        port = int(port)
    except ValueError:
        pass
    return host, port


class RelayServer:
    """
    中继服务端 - 接受 WebSocket 连接并为每个连接创建 RelaySession

    Attributes:
        config: 中继配置
        connector: 出站连接器（所有会话共享同一个回退出口地址）
        sessions: 活动会话集合
    """

    def __init__(self, config: RelayConfig, connector: OutboundConnector):
        self.config = config
        self.connector = connector
        self.sessions: Set[RelaySession] = set()

    @property
    def active_sessions(self) -> int:
        return len(self.sessions)

    def process_request(self, connection: ServerConnection, request: Request):
        """握手前的路由：只有隧道入口路径允许升级"""
        path = urlsplit(request.path).path
        if path != self.config.connect_path:
            logger.debug(f"拒绝路径: {path}")
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def handle_client(self, connection: ServerConnection):
        """处理一个已完成升级的客户端连接"""
        host, port = parse_destination(connection.request.path)
        peer = connection.remote_address
        logger.info(f"来自 {peer[0] if peer else 'unknown'} 的隧道请求 -> {host}:{port}")

        channel = WebSocketChannel(connection)
        session = RelaySession(channel, host, port, self.connector)
        self.sessions.add(session)
        events = asyncio.ensure_future(channel.serve_events())
        try:
            await session.run()
        finally:
            self.sessions.discard(session)
            events.cancel()
            await asyncio.gather(events, return_exceptions=True)

    async def listen(self) -> Server:
        """开始监听并返回 websockets 服务端对象"""
        server = await serve(
            self.handle_client,
            self.config.host,
            self.config.port,
            process_request=self.process_request,
        )
        addr = server.sockets[0].getsockname()
        logger.info(f"中继服务端运行在 {addr[0]}:{addr[1]}{self.config.connect_path}")
        return server

    async def start(self):
        """启动服务端并一直运行"""
        server = await self.listen()
        monitor_task: Optional[asyncio.Task] = None
        if self.config.monitor_interval > 0:
            monitor = ResourceMonitor(self, self.config.monitor_interval)
            monitor_task = asyncio.ensure_future(monitor.run())
        try:
            async with server:
                await server.serve_forever()
        finally:
            if monitor_task is not None:
                monitor_task.cancel()


def main():
    """主函数"""
    parser = argparse.ArgumentParser(description='WebSocket 到 TCP 中继服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--host', default=None, help='监听地址（覆盖配置文件）')
    parser.add_argument('--port', '-p', type=int, default=None, help='监听端口（覆盖配置文件）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args()

    # 加载配置文件
    try:
        config_data = load_config(args.config)
    except FileNotFoundError:
        config_data = {}

    log_config = LogConfig.from_dict(config_data)
    if args.debug:
        log_config.level = 'DEBUG'
    setup_logging(log_config)

    try:
        config = RelayConfig.from_dict(config_data)
    except ValueError as e:
        logger.error(f"配置错误: {e}")
        return 1
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port

    # 进程级回退出口地址只在启动时选择一次
    fallback = init_fallback_address(config.fallback_addresses)
    connector = OutboundConnector(fallback, read_size=config.read_chunk_size)
    server = RelayServer(config, connector)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("服务端已停止")

    return 0


if __name__ == '__main__':
    exit(main())
