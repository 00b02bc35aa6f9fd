"""
出站连接模块 - 建立到目标主机的原始 TCP 连接

此模块包含：
- RemoteConnection: 对单个 address:port 的原始字节流连接
- OutboundConnector: 直连目标或经由回退出口地址连接
- 进程级回退出口地址的一次性随机选择

连接操作对调用方是非阻塞的：connect() 立即返回连接句柄，
读写操作在底层传输就绪后才真正执行。连接失败不会在调用时抛出，
而是体现为读取端零字节结束，失败原因记录在 closed 终止信号上。
"""

import asyncio
import logging
import random
from typing import AsyncIterator, Callable, List, Optional, Sequence, Union

from .errors import RemoteConnectError

logger = logging.getLogger('bepass-relay.connector')

# ============================================================================
# 回退出口地址 - 进程启动时随机选定，此后只读
# ============================================================================

DEFAULT_FALLBACK_ADDRESSES = ['cdn-b100.xn--b6gac.eu.org']

_fallback_address: Optional[str] = None


def init_fallback_address(addresses: Sequence[str] = None, rng: random.Random = None) -> Optional[str]:
    """
    在进程启动时选定回退出口地址

    从地址列表中均匀随机地选择一个，整个进程生命周期内只选择一次，
    重复调用直接返回已选定的地址。

    Args:
        addresses: 回退地址列表，默认为 DEFAULT_FALLBACK_ADDRESSES
        rng: 随机数生成器（测试时可注入）

    Returns:
        Optional[str]: 选定的地址；列表为空时返回 None
    """
    global _fallback_address
    if _fallback_address is not None:
        return _fallback_address
    if addresses is None:
        addresses = DEFAULT_FALLBACK_ADDRESSES
    if not addresses:
        logger.warning("未配置回退出口地址，重试将直接使用原目标地址")
        return None
    _fallback_address = (rng or random).choice(list(addresses))
    logger.info(f"回退出口地址: {_fallback_address}")
    return _fallback_address


def get_fallback_address() -> Optional[str]:
    return _fallback_address


# ============================================================================
# 远端连接
# ============================================================================

OpenConnection = Callable[..., 'asyncio.Future']


class RemoteConnection:
    """
    到单个 address:port 的原始字节流连接

    读取端和写入端可以并发使用：读取端由 remote -> client 泵独占，
    写入端由 client -> remote 泵独占。

    Attributes:
        host: 目标地址
        port: 目标端口
        label: 日志前缀，默认为 host:port；经由回退地址时为原始请求目标
        reader: asyncio.StreamReader（连接建立后可用）
        writer: asyncio.StreamWriter（连接建立后可用）
        closed: 终止信号；正常结束时结果为 None，连接失败或读取出错时携带异常
    """

    def __init__(self, host: str, port: Union[int, str],
                 open_connection: OpenConnection = asyncio.open_connection,
                 read_size: int = 65536, label: str = None):
        self.host = host
        self.port = port
        self.label = label or f"{host}:{port}"
        self.read_size = read_size
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._close_requested = False

        loop = asyncio.get_running_loop()
        self.closed: asyncio.Future = loop.create_future()
        # 终止信号可能无人等待，提前取走异常以免事件循环报告未处理异常
        self.closed.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._opening = asyncio.ensure_future(self._open(open_connection))

    def __repr__(self):
        return f"RemoteConnection({self.host}:{self.port})"

    async def _open(self, open_connection: OpenConnection) -> bool:
        try:
            reader, writer = await open_connection(self.host, self.port)
        except Exception as e:
            logger.debug(f"[{self.label}] 连接 {self.host}:{self.port} 失败: {e}")
            self._finish(RemoteConnectError(self.host, self.port, e))
            return False

        self.reader, self.writer = reader, writer
        if self._close_requested:
            self._close_writer()
            self._finish()
            return False
        return True

    def _finish(self, error: Exception = None):
        if self.closed.done():
            return
        if error is None:
            self.closed.set_result(None)
        else:
            self.closed.set_exception(error)

    def _terminal_error(self) -> Exception:
        if self.closed.done() and not self.closed.cancelled() and self.closed.exception():
            return self.closed.exception()
        return RemoteConnectError(self.host, self.port, ConnectionError('连接已关闭'))

    @property
    def opened(self) -> bool:
        return self.writer is not None

    async def ready(self) -> bool:
        """等待底层连接建立；返回连接是否可用"""
        return await asyncio.shield(self._opening)

    async def write(self, chunk: bytes):
        """
        写入一个数据块并等待缓冲区排空

        Raises:
            RemoteConnectError: 连接未能建立或已关闭
            OSError: 写入过程中连接出错
        """
        if not await self.ready():
            raise self._terminal_error()
        self.writer.write(chunk)
        await self.writer.drain()

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """
        按顺序产出远端数据

        连接失败时不产出任何数据直接结束（零字节）；
        读取过程中出错时记录终止信号并重新抛出异常。
        """
        if not await self.ready():
            return
        try:
            while True:
                data = await self.reader.read(self.read_size)
                if not data:
                    break
                yield data
        except Exception as e:
            self._finish(e)
            raise
        self._finish()

    async def wait_closed(self):
        """等待终止信号；连接以错误结束时抛出对应异常"""
        await asyncio.shield(self.closed)

    def _close_writer(self):
        try:
            self.writer.close()
        except (ConnectionResetError, BrokenPipeError, OSError):
            pass
        except Exception as e:
            logger.debug(f"[{self.label}] 关闭远端连接写入器时出错: {e}")

    def close(self):
        """关闭底层传输；尚未建立的连接会在建立后立即关闭"""
        self._close_requested = True
        if self.writer is not None:
            self._close_writer()
            self._finish()


class OutboundConnector:
    """
    出站连接器

    Attributes:
        fallback_address: 回退出口地址；为 None 时重试使用原目标地址
        open_connection: 建立 TCP 连接的协程函数，默认 asyncio.open_connection
        read_size: 单次读取的最大字节数
    """

    def __init__(self, fallback_address: Optional[str] = None,
                 open_connection: OpenConnection = asyncio.open_connection,
                 read_size: int = 65536):
        self.fallback_address = fallback_address
        self.open_connection = open_connection
        self.read_size = read_size

    def connect(self, host: str, port: Union[int, str]) -> RemoteConnection:
        """连接到请求的目标地址"""
        return RemoteConnection(host, port, self.open_connection, self.read_size)

    def connect_via_fallback(self, host: str, port: Union[int, str]) -> RemoteConnection:
        """经由回退出口地址连接，保留原始请求端口"""
        return RemoteConnection(self.fallback_address or host, port,
                                self.open_connection, self.read_size, label=f"{host}:{port}")


def addresses_from(value: Union[str, List[str], None]) -> List[str]:
    """将配置中的回退地址（字符串或列表）规范化为列表"""
    if value is None:
        return list(DEFAULT_FALLBACK_ADDRESSES)
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    return [str(item) for item in value]
