#!/usr/bin/env python3
"""
中继会话测试

测试内容:
1. 场景 A: 远端回显后正常关闭，客户端收到数据后被关闭，不重试
2. 场景 B: 主连接零字节结束，经由回退地址（原端口）重试
3. 场景 C: 客户端未发送数据即关闭，不建立任何远端连接
4. 场景 D: 远端交付数据后出错，立即关闭客户端，不重试
5. 重试上限、数据顺序、四种终止事件任意交错下只关闭一次
6. 重试时先读取回退连接再重放首个数据块；会话的每条日志都带有目标 host:port
"""

import asyncio
import itertools
import logging

import pytest

from bepass_relay.channel import ReadyState
from bepass_relay.connector import OutboundConnector
from bepass_relay.errors import ChannelError
from bepass_relay.session import RelaySession, RelayState
from relay_fakes import (
    ExplodingChannel,
    FakeChannel,
    FakeEndpoint,
    FakeNetwork,
    FakeReader,
    FakeWriter,
    wait_until,
)

HOST = 'example.com'
PORT = 443
FALLBACK = 'fallback.example'


def make_session(network: FakeNetwork, fallback: str = FALLBACK):
    channel = FakeChannel()
    connector = OutboundConnector(fallback, open_connection=network.open_connection)
    session = RelaySession(channel, HOST, PORT, connector)
    task = asyncio.ensure_future(session.run())
    return channel, session, task


async def finish(task):
    await asyncio.wait_for(task, 2.0)


async def test_scenario_a_echo_then_close():
    network = FakeNetwork()
    endpoint = network.add(HOST, echo=True)
    channel, session, task = make_session(network)

    channel.client_message(b'hello')
    await wait_until(lambda: channel.sent == [b'hello'])
    endpoint.reader.feed_eof()
    await finish(task)

    assert endpoint.received == [b'hello']
    assert channel.sent == [b'hello']
    assert channel.close_calls == 1
    assert network.attempts == [(HOST, PORT)]
    assert not session.retried
    assert session.state == RelayState.DONE


async def test_first_chunk_starts_remote_pump_before_write():
    network = FakeNetwork()
    network.add(HOST)
    channel, session, task = make_session(network)

    assert session.state == RelayState.AWAITING_FIRST_CHUNK
    assert session.remote is None

    channel.client_message(b'x')
    await wait_until(lambda: session.remote is not None)
    assert session.state == RelayState.CONNECTED
    assert session.remote_task is not None

    channel.client_close()
    network.endpoints[HOST].reader.feed(b'y')
    await finish(task)


async def test_scenario_b_zero_bytes_retries_via_fallback():
    network = FakeNetwork()
    primary = network.add(HOST)
    primary.reader.feed_eof()
    fallback = network.add(FALLBACK)
    fallback.reader.feed(b'from-fallback')
    fallback.reader.feed_eof()
    channel, session, task = make_session(network)

    channel.client_message(b'hi')
    await finish(task)

    assert network.attempts == [(HOST, PORT), (FALLBACK, PORT)]
    assert fallback.received == [b'hi']
    assert channel.sent == [b'from-fallback']
    assert channel.close_calls == 1
    assert session.retried


async def test_connect_failure_retries_via_fallback():
    network = FakeNetwork()
    fallback = network.add(FALLBACK, echo=True)
    channel, session, task = make_session(network)

    channel.client_message(b'ping')
    await wait_until(lambda: channel.sent == [b'ping'])
    fallback.reader.feed_eof()
    await finish(task)

    assert network.attempts == [(HOST, PORT), (FALLBACK, PORT)]
    assert channel.close_calls == 1


async def test_retry_without_fallback_uses_original_host():
    network = FakeNetwork()
    network.add(HOST).reader.feed_eof()
    channel, session, task = make_session(network, fallback=None)

    channel.client_message(b'hi')
    await wait_until(lambda: len(network.attempts) == 2)
    network.endpoints[HOST].reader.feed_eof()
    await finish(task)

    assert network.attempts == [(HOST, PORT), (HOST, PORT)]


async def test_retry_happens_at_most_once():
    network = FakeNetwork()
    network.add(HOST).reader.feed_eof()
    network.add(FALLBACK).reader.feed_eof()
    channel, session, task = make_session(network)

    channel.client_message(b'hi')
    await finish(task)

    assert len(network.attempts) == 2
    assert channel.sent == []
    assert channel.close_calls == 1


async def test_fallback_connect_failure_closes_client():
    network = FakeNetwork()
    channel, session, task = make_session(network)

    channel.client_message(b'hi')
    await finish(task)

    assert network.attempts == [(HOST, PORT), (FALLBACK, PORT)]
    assert channel.close_calls == 1


async def test_no_retry_after_data_delivered():
    network = FakeNetwork()
    endpoint = network.add(HOST)
    endpoint.reader.feed(b'data')
    endpoint.reader.feed_eof()
    channel, session, task = make_session(network)

    channel.client_message(b'req')
    await finish(task)

    assert network.attempts == [(HOST, PORT)]
    assert channel.sent == [b'data']
    assert not session.retried


async def test_scenario_c_close_before_any_chunk():
    network = FakeNetwork()
    channel, session, task = make_session(network)

    channel.client_close()
    await finish(task)

    assert network.attempts == []
    assert session.remote is None
    assert channel.close_calls == 0
    assert session.shutdown.closed


async def test_scenario_d_remote_error_after_data():
    network = FakeNetwork()
    endpoint = network.add(HOST)
    channel, session, task = make_session(network)

    channel.client_message(b'req')
    for chunk in (b'c1', b'c2', b'c3'):
        endpoint.reader.feed(chunk)
    await wait_until(lambda: len(channel.sent) == 3)
    endpoint.reader.fail(ConnectionResetError('reset by peer'))
    await finish(task)

    assert channel.sent == [b'c1', b'c2', b'c3']
    assert channel.close_calls == 1
    assert network.attempts == [(HOST, PORT)]
    assert not session.retried


async def test_client_chunks_preserve_order():
    network = FakeNetwork()
    endpoint = network.add(HOST)
    channel, session, task = make_session(network)
    chunks = [f'chunk-{i}'.encode() for i in range(50)]

    for chunk in chunks:
        channel.client_message(chunk)
    await wait_until(lambda: len(endpoint.received) == len(chunks))
    endpoint.reader.feed(b'ok')
    endpoint.reader.feed_eof()
    await finish(task)

    assert endpoint.received == chunks
    assert session.bytes_up == sum(len(c) for c in chunks)


async def test_remote_data_after_client_closed_tears_down_remote():
    network = FakeNetwork()
    endpoint = network.add(HOST)
    channel, session, task = make_session(network)

    channel.client_message(b'req')
    await wait_until(lambda: endpoint.received == [b'req'])
    channel.client_close()
    endpoint.reader.feed(b'late')
    await finish(task)

    assert channel.sent == []
    assert endpoint.writer.closed
    assert not session.retried
    assert channel.close_calls == 0


async def test_client_error_closes_channel():
    network = FakeNetwork()
    endpoint = network.add(HOST)
    channel, session, task = make_session(network)

    channel.client_message(b'req')
    await wait_until(lambda: endpoint.received == [b'req'])
    channel.client_error(OSError('broken'))
    await wait_until(lambda: channel.close_calls == 1)
    endpoint.reader.feed(b'late')
    await finish(task)

    assert channel.close_calls == 1
    assert channel.state == ReadyState.CLOSED
    assert isinstance(session.client_error, ChannelError)


async def test_cancelled_run_cancels_stream():
    network = FakeNetwork()
    network.add(HOST)
    channel, session, task = make_session(network)

    channel.client_message(b'req')
    await wait_until(lambda: session.remote_task is not None)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.stream.cancelled
    assert channel.close_calls == 1
    assert session.state == RelayState.DONE
    assert session.remote_task.done()


EVENTS = ['client_close', 'client_error', 'remote_eof', 'remote_error']


@pytest.mark.parametrize('order', list(itertools.permutations(EVENTS)))
async def test_close_is_idempotent_under_any_interleaving(order):
    network = FakeNetwork()
    endpoint = network.add(HOST)
    channel, session, task = make_session(network)

    channel.client_message(b'req')
    endpoint.reader.feed(b'resp')
    await wait_until(lambda: channel.sent == [b'resp'])

    for event in order:
        if event == 'client_close':
            channel.client_close()
        elif event == 'client_error':
            channel.client_error(RuntimeError('client fault'))
        elif event == 'remote_eof':
            endpoint.reader.feed_eof()
        else:
            endpoint.reader.fail(ConnectionResetError('remote fault'))
        await asyncio.sleep(0)

    await finish(task)

    assert channel.close_calls <= 1
    assert session.shutdown.closed
    assert not session.retried


class RecordingReader(FakeReader):
    def __init__(self, endpoint: 'GreetingEndpoint'):
        super().__init__()
        self.endpoint = endpoint
        self.was_read = asyncio.Event()

    async def read(self, n: int = -1) -> bytes:
        self.endpoint.calls.append('read')
        self.was_read.set()
        return await super().read(n)


class BackpressureWriter(FakeWriter):
    async def drain(self):
        # 对端不读取问候之前不接收新数据
        await asyncio.wait_for(self.endpoint.reader.was_read.wait(), 1.0)
        self.endpoint.calls.append('drained')


class GreetingEndpoint(FakeEndpoint):
    """先发送问候、在问候被读取之前写缓冲不排空的远端"""

    def __init__(self):
        super().__init__()
        self.calls = []
        self.reader = RecordingReader(self)
        self.writer = BackpressureWriter(self)


async def test_retry_reads_fallback_before_replaying_first_chunk():
    network = FakeNetwork()
    network.add(HOST).reader.feed_eof()
    fallback = GreetingEndpoint()
    fallback.reader.feed(b'greeting')
    fallback.reader.feed_eof()
    network.endpoints[FALLBACK] = fallback
    channel, session, task = make_session(network)

    channel.client_message(b'hi')
    await finish(task)

    assert fallback.received == [b'hi']
    assert fallback.calls.index('read') < fallback.calls.index('drained')
    assert channel.sent == [b'greeting']
    assert not session.stream.cancelled
    assert channel.close_calls == 1


async def test_every_session_log_line_carries_destination(caplog):
    caplog.set_level(logging.DEBUG, logger='bepass-relay')
    network = FakeNetwork()
    network.add(HOST).reader.feed_eof()
    channel = ExplodingChannel()
    connector = OutboundConnector(FALLBACK, open_connection=network.open_connection)
    session = RelaySession(channel, HOST, PORT, connector)
    task = asyncio.ensure_future(session.run())

    channel.client_message(b'hi')
    await wait_until(lambda: session.shutdown.closed)
    channel.client_error(RuntimeError('client fault'))
    await finish(task)

    messages = [r.getMessage() for r in caplog.records if r.name.startswith('bepass-relay')]
    assert any('safe_close' in message for message in messages)
    assert any(FALLBACK in message for message in messages)
    assert [m for m in messages if f'{HOST}:{PORT}' not in m] == []
