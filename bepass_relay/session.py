"""
中继会话模块 - 客户端通道与远端 TCP 连接之间的双向数据泵

RelaySession 负责单个客户端通道从接入到关闭的完整生命周期：

    AWAITING_FIRST_CHUNK -> CONNECTED -> (RETRYING -> CONNECTED)? -> DONE

工作流程:
1. 将客户端通道适配为 ChunkStream
2. 收到第一个数据块时建立远端连接，并在写入该数据块之前启动 remote -> client 泵
3. 之后的每个数据块按顺序写入当前活动的远端连接
4. 若第一个远端连接未交付任何字节就结束，则经由回退出口地址重试一次
5. 远端方向结束（成功或失败）后通过关闭协调器关闭客户端通道

所有故障都在会话内部被吸收为关闭客户端通道的动作，不会抛给入口调用方。
"""

import asyncio
import logging
from enum import Enum
from typing import List, Optional, Union

from .channel import EventChannel, ReadyState
from .connector import OutboundConnector, RemoteConnection
from .errors import ChannelError, ChannelNotOpenError, RemoteConnectError
from .shutdown import ShutdownCoordinator
from .stream import ChunkStream

logger = logging.getLogger('bepass-relay.session')


class RelayState(Enum):
    AWAITING_FIRST_CHUNK = 'awaiting_first_chunk'
    CONNECTED = 'connected'
    RETRYING = 'retrying'
    DONE = 'done'


class RelaySession:
    """
    中继会话 - 一个客户端通道与（至多两个，跨越重试的）远端连接的配对

    远端连接槽 ``remote`` 只由首块连接步骤和重试步骤写入，
    每次写入远端时读取该槽，从不在会话之间共享。

    Attributes:
        channel: 客户端通道
        host: 目标主机
        port: 目标端口
        connector: 出站连接器
        shutdown: 关闭协调器
        stream: 客户端数据块流
        state: 当前状态
        remote: 当前活动的远端连接
        connections: 本会话创建过的全部远端连接
        retried: 是否已经执行过回退重试
        client_error: 客户端通道上报的错误（数据流取消后到达的错误同样记录）
        bytes_up: client -> remote 方向已写入的字节数
        bytes_down: remote -> client 方向已转发的字节数
    """

    def __init__(self, channel: EventChannel, host: str, port: Union[int, str],
                 connector: OutboundConnector):
        self.channel = channel
        self.host = host
        self.port = port
        self.connector = connector
        self.label = f"{host}:{port}"

        self.shutdown = ShutdownCoordinator(channel, self.label)
        self.stream = ChunkStream(channel, self.shutdown, self.label)
        self.state = RelayState.AWAITING_FIRST_CHUNK

        self.remote: Optional[RemoteConnection] = None
        self.connections: List[RemoteConnection] = []
        self.first_chunk: Optional[bytes] = None
        self.retried = False
        self.remote_task: Optional[asyncio.Task] = None

        self.client_error: Optional[ChannelError] = None
        self.bytes_up = 0
        self.bytes_down = 0

        self.stream.add_error_callback(self._on_client_error)

    def _log(self, level: int, msg: str):
        logger.log(level, f"[{self.label}] {msg}")

    async def run(self):
        """
        运行会话直到两个方向都进入终止状态

        仅在外部取消时抛出 asyncio.CancelledError。
        """
        self._log(logging.INFO, "会话开始")
        try:
            await self._client_to_remote()
            if self.remote_task is not None:
                await self.remote_task
        except asyncio.CancelledError:
            self.stream.cancel('会话被取消')
            raise
        finally:
            if self.remote_task is not None and not self.remote_task.done():
                self.remote_task.cancel()
                await asyncio.gather(self.remote_task, return_exceptions=True)
            for connection in self.connections:
                connection.close()
            self.state = RelayState.DONE
            self._log(logging.INFO,
                      f"会话结束: 上行 {self.bytes_up} 字节, 下行 {self.bytes_down} 字节, "
                      f"重试={self.retried}, 客户端错误={self.client_error}")

    def _on_client_error(self, error: ChannelError):
        self.client_error = error
        self.shutdown.close('客户端错误')

    # ------------------------------------------------------------------
    # client -> remote
    # ------------------------------------------------------------------

    async def _client_to_remote(self):
        try:
            async for chunk in self.stream:
                if self.remote is None:
                    self._connect(chunk)
                await self._write(chunk)
        except ChannelError as e:
            self._log(logging.WARNING, f"客户端数据流出错: {e}")
            self.shutdown.close('客户端错误')
            return
        self._log(logging.DEBUG, "客户端数据流结束")

    def _connect(self, first_chunk: bytes):
        """首个数据块触发：建立远端连接并启动 remote -> client 方向"""
        self.first_chunk = first_chunk
        self.remote = self.connector.connect(self.host, self.port)
        self.connections.append(self.remote)
        self.state = RelayState.CONNECTED
        self._log(logging.INFO, "连接远端")
        self.remote_task = asyncio.ensure_future(self._remote_direction(self.remote))

    def _retry_pending(self) -> bool:
        """第一个连接尚未交付数据且未重试过，回退重试仍然可能发生"""
        return not self.retried and self.bytes_down == 0

    async def _write(self, chunk: bytes, remote: RemoteConnection = None):
        remote = remote or self.remote
        try:
            await remote.write(chunk)
        except RemoteConnectError as e:
            self._log(logging.DEBUG, f"远端连接不可用，丢弃 {len(chunk)} 字节: {e}")
            return
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            if remote is not self.remote or self._retry_pending():
                self._log(logging.DEBUG, f"写入远端失败，等待重试: {e}")
                return
            self._log(logging.WARNING, f"写入远端失败: {e}")
            self.stream.cancel(f"写入远端失败: {e}")
            return
        self.bytes_up += len(chunk)

    # ------------------------------------------------------------------
    # remote -> client
    # ------------------------------------------------------------------

    async def _remote_direction(self, remote: RemoteConnection):
        has_incoming_data = await self._pump(remote)
        if has_incoming_data is None:
            return
        if not has_incoming_data and not self.retried:
            await self._retry()
            return
        self.shutdown.close('远端连接结束')

    async def _pump(self, remote: RemoteConnection) -> Optional[bool]:
        """
        将远端数据逐块转发给客户端

        Returns:
            Optional[bool]: 正常结束时返回是否交付过数据；出错时返回 None
        """
        has_incoming_data = False
        chunks = remote.iter_chunks()
        try:
            async for data in chunks:
                has_incoming_data = True
                if self.channel.ready_state != ReadyState.OPEN:
                    raise ChannelNotOpenError('客户端通道未处于 OPEN 状态')
                await self.channel.send(data)
                self.bytes_down += len(data)
        except Exception as e:
            self._log(logging.ERROR, f"remote -> client 出错: {e}")
            remote.close()
            self.shutdown.close('远端错误')
            return None
        finally:
            await chunks.aclose()

        self._log(logging.INFO, f"远端读取结束, has_incoming_data={has_incoming_data}")
        return has_incoming_data

    async def _retry(self):
        """
        经由回退出口地址重试一次

        替换活动连接、先启动 remote -> client 泵再重放首个数据块，
        无论结果如何，在回退连接进入终止状态后关闭客户端通道。
        """
        self.retried = True
        self.state = RelayState.RETRYING
        self.remote.close()

        remote = self.connector.connect_via_fallback(self.host, self.port)
        self._log(logging.INFO, f"重试: 经由 {remote.host}:{remote.port}")
        self.remote = remote
        self.connections.append(remote)
        self.state = RelayState.CONNECTED

        pump = asyncio.ensure_future(self._pump(remote))
        try:
            if self.first_chunk is not None:
                await self._write(self.first_chunk, remote)
            await pump
        finally:
            if not pump.done():
                pump.cancel()
        try:
            await remote.wait_closed()
        except Exception as e:
            self._log(logging.WARNING, f"重试连接以错误结束: {e}")
        finally:
            self.shutdown.close('重试连接结束')
