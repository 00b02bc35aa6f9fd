"""
测试替身 - 内存中的客户端通道与远端网络

FakeChannel 模拟事件驱动的 WebSocket 通道；FakeNetwork 提供可注入
OutboundConnector 的 open_connection，每个目标主机对应一个 FakeEndpoint。
"""

import asyncio
from typing import Dict, List, Tuple

from bepass_relay.channel import EVENT_CLOSE, EVENT_ERROR, EVENT_MESSAGE, EventChannel, ReadyState


class FakeChannel(EventChannel):
    """记录发送消息和 close() 调用次数的客户端通道"""

    def __init__(self, state: ReadyState = ReadyState.OPEN):
        super().__init__()
        self.state = state
        self.sent: List[bytes] = []
        self.close_calls = 0

    @property
    def ready_state(self) -> int:
        return self.state

    async def send(self, data: bytes):
        self.sent.append(data)

    def close(self, code: int = 1000, reason: str = ''):
        self.close_calls += 1
        self.state = ReadyState.CLOSED
        # 真实通道在关闭握手完成后才触发 close 事件
        asyncio.get_running_loop().call_soon(self.emit, EVENT_CLOSE)

    def client_message(self, data: bytes):
        self.emit(EVENT_MESSAGE, data)

    def client_close(self):
        self.state = ReadyState.CLOSED
        self.emit(EVENT_CLOSE)

    def client_error(self, exc: Exception):
        self.emit(EVENT_ERROR, exc)


class ExplodingChannel(FakeChannel):
    """close() 总是抛出异常的客户端通道"""

    def close(self, code: int = 1000, reason: str = ''):
        self.close_calls += 1
        raise RuntimeError('close 失败')


class FakeReader:
    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()

    def feed(self, data: bytes):
        self.queue.put_nowait(data)

    def feed_eof(self):
        self.queue.put_nowait(b'')

    def fail(self, exc: Exception):
        self.queue.put_nowait(exc)

    async def read(self, n: int = -1) -> bytes:
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item


class FakeWriter:
    def __init__(self, endpoint: 'FakeEndpoint'):
        self.endpoint = endpoint
        self.closed = False

    def write(self, data: bytes):
        if self.closed:
            raise BrokenPipeError('写入已关闭的连接')
        self.endpoint.on_write(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True


class FakeEndpoint:
    """一个远端目标：received 记录写入的数据，echo=True 时原样回显"""

    def __init__(self, echo: bool = False):
        self.echo = echo
        self.received: List[bytes] = []
        self.reader = FakeReader()
        self.writer = FakeWriter(self)

    def on_write(self, data: bytes):
        self.received.append(data)
        if self.echo:
            self.reader.feed(data)


class FakeNetwork:
    """按主机名查找 FakeEndpoint；未注册的主机拒绝连接"""

    def __init__(self):
        self.endpoints: Dict[str, FakeEndpoint] = {}
        self.attempts: List[Tuple[str, object]] = []

    def add(self, host: str, echo: bool = False) -> FakeEndpoint:
        endpoint = FakeEndpoint(echo=echo)
        self.endpoints[host] = endpoint
        return endpoint

    async def open_connection(self, host, port):
        self.attempts.append((host, port))
        endpoint = self.endpoints.get(host)
        if endpoint is None:
            raise ConnectionRefusedError(f"连接被拒绝: {host}:{port}")
        return endpoint.reader, endpoint.writer


async def wait_until(predicate, timeout: float = 2.0):
    """轮询直到条件成立，超时抛出 AssertionError"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('等待条件超时')
        await asyncio.sleep(0.001)
