#!/usr/bin/env python3
"""
会话状态机测试

测试内容:
1. 认证决策（接受、拒绝、none 试探、超时、异常、拒绝延迟）
2. 通道打开与关闭
3. 回显与广播（两个连接的 "hi" 场景）
4. 事件按到达顺序处理
5. 空闲超时关闭连接并清空注册表
6. 远程端口转发请求
"""

import asyncio

import pytest

from config import ServerConfig
from relay.broadcast import BroadcastRelay
from relay.forwarding import ForwardingAgent, ForwardRequest
from relay.registry import ChannelRegistry
from relay.session import (
    Credential,
    SessionClosedError,
    SessionHandler,
    SessionState,
    annotate,
)


class FakeHandle:
    """记录写入内容的假通道句柄"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.written = []
        self.closed = False

    def write(self, data: bytes):
        if self.fail:
            raise BrokenPipeError("对端已断开")
        self.written.append(data)

    def write_eof(self):
        pass

    def close(self):
        self.closed = True


class FakeChannel:
    """假的转发通道"""

    def __init__(self):
        self.data = b''
        self.eof = False
        self.closed = False

    def write(self, data: bytes):
        self.data += data

    def write_eof(self):
        self.eof = True

    def close(self):
        self.closed = True


def make_config(**overrides) -> ServerConfig:
    values = dict(auth_rejection_time=0, auth_rejection_time_initial=0, forward_open_delay=0)
    values.update(overrides)
    return ServerConfig(**values)


def make_session(connection_id, registry, config=None, **kwargs) -> SessionHandler:
    config = config or make_config()
    forwarder = kwargs.pop('forwarder', None) or ForwardingAgent(open_delay=0)
    return SessionHandler(
        connection_id, registry, BroadcastRelay(registry), forwarder, config, **kwargs
    )


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(0.01)


# ============================================================================
# 认证
# ============================================================================

def test_accept_all_by_default():
    """测试默认策略接受所有客户端"""
    async def scenario():
        session = make_session(1, ChannelRegistry())
        assert session.state is SessionState.UNAUTHENTICATED
        assert await session.decide_auth(Credential('anyone')) is True
        assert session.state is SessionState.ACTIVE

    asyncio.run(scenario())


def test_rejected_credential_is_terminal():
    """测试非 none 方式被拒绝后进入 REJECTED 终态"""
    async def scenario():
        session = make_session(1, ChannelRegistry(), auth_policy=lambda c: False)
        assert await session.decide_auth(Credential('mallory', 'password', 'guess')) is False
        assert session.state is SessionState.REJECTED

        # 终态之后即使策略改变也不会再接受
        session.auth_policy = lambda c: True
        assert await session.decide_auth(Credential('mallory', 'password', 'guess')) is False

        with pytest.raises(SessionClosedError):
            await session.on_channel_open(1, FakeHandle())

    asyncio.run(scenario())


def test_none_probe_rejection_keeps_session_pending():
    """测试 none 试探被拒绝时会话仍可继续认证"""
    def policy(credential):
        return credential.method == 'password' and credential.secret == 'sesame'

    async def scenario():
        session = make_session(1, ChannelRegistry(), auth_policy=policy)
        assert await session.decide_auth(Credential('alice')) is False
        assert session.state is SessionState.UNAUTHENTICATED

        assert await session.decide_auth(Credential('alice', 'password', 'sesame')) is True
        assert session.state is SessionState.ACTIVE
        assert session.auth_attempts == 2

    asyncio.run(scenario())


def test_reject_during_auth_is_terminal():
    """测试认证阶段被终止（登录超时）后进入 REJECTED，且关闭后仍保持该状态"""
    async def scenario():
        session = make_session(1, ChannelRegistry())
        session.reject('登录超时')
        assert session.state is SessionState.REJECTED
        assert await session.decide_auth(Credential('late')) is False

        await session.close()
        assert session.state is SessionState.REJECTED

        # 已认证的会话不受影响
        active = make_session(2, ChannelRegistry())
        assert await active.decide_auth(Credential('alice')) is True
        active.reject('登录超时')
        assert active.state is SessionState.ACTIVE

    asyncio.run(scenario())


def test_async_policy_timeout_counts_as_rejection():
    """测试异步认证策略超时视为拒绝"""
    async def slow_policy(credential):
        await asyncio.sleep(5)
        return True

    async def scenario():
        config = make_config(auth_timeout=0.05)
        session = make_session(1, ChannelRegistry(), config, auth_policy=slow_policy)
        assert await session.decide_auth(Credential('bob', 'password', 'x')) is False
        assert session.state is SessionState.REJECTED

    asyncio.run(scenario())


def test_async_policy_accepts():
    """测试异步认证策略"""
    async def policy(credential):
        return credential.username == 'carol'

    async def scenario():
        session = make_session(1, ChannelRegistry(), auth_policy=policy)
        assert await session.decide_auth(Credential('carol', 'publickey', 'SHA256:abc')) is True

    asyncio.run(scenario())


def test_policy_exception_counts_as_rejection():
    """测试认证策略抛出异常时视为拒绝，不影响服务器"""
    def broken_policy(credential):
        raise RuntimeError("策略故障")

    async def scenario():
        session = make_session(1, ChannelRegistry(), auth_policy=broken_policy)
        assert await session.decide_auth(Credential('dave', 'password', 'x')) is False
        assert session.state is SessionState.REJECTED

    asyncio.run(scenario())


def test_rejection_delay():
    """测试首次拒绝使用 initial 延迟，之后使用常规延迟"""
    async def scenario():
        loop = asyncio.get_running_loop()
        config = make_config(auth_rejection_time=0.2, auth_rejection_time_initial=0)
        session = make_session(1, ChannelRegistry(), config, auth_policy=lambda c: False)

        start = loop.time()
        await session.decide_auth(Credential('eve'))
        assert loop.time() - start < 0.15, "首次拒绝不应延迟"

        start = loop.time()
        await session.decide_auth(Credential('eve', 'password', 'x'))
        assert loop.time() - start >= 0.19

    asyncio.run(scenario())


# ============================================================================
# 通道、回显与广播
# ============================================================================

def test_annotate_replaces_invalid_utf8():
    """测试无效 UTF-8 序列被替换而不是拒绝"""
    assert annotate(b'hi') == b'Got data: hi'
    assert annotate(b'\xffok') == 'Got data: \ufffdok'.encode('utf-8')
    assert annotate(b'x', prefix='> ') == b'> x'


def test_echo_and_broadcast_between_two_connections():
    """测试 A 发送 "hi"：A 的通道收到回显，B 的通道收到广播"""
    async def scenario():
        registry = ChannelRegistry()
        a = make_session(1, registry)
        b = make_session(2, registry)
        await a.decide_auth(Credential('a'))
        await b.decide_auth(Credential('b'))

        handle_a, handle_b = FakeHandle(), FakeHandle()
        await a.on_channel_open(1, handle_a)
        await b.on_channel_open(2, handle_b)

        await a.on_data(1, b'hi')

        assert handle_a.written == [b'Got data: hi']
        assert handle_b.written == [b'Got data: hi']
        assert await registry.entries() == [(1, 1), (2, 2)]

    asyncio.run(scenario())


def test_echo_survives_broken_own_channel():
    """测试回显写入失败时仍会广播给其他连接"""
    async def scenario():
        registry = ChannelRegistry()
        a = make_session(1, registry)
        b = make_session(2, registry)
        await a.decide_auth(Credential('a'))
        await b.decide_auth(Credential('b'))

        other = FakeHandle()
        await a.on_channel_open(1, FakeHandle(fail=True))
        await b.on_channel_open(1, other)

        await a.on_data(1, b'ping')
        assert other.written == [b'Got data: ping']

    asyncio.run(scenario())


def test_custom_echo_prefix():
    """测试可配置的回显前缀"""
    async def scenario():
        registry = ChannelRegistry()
        session = make_session(1, registry, make_config(echo_prefix='echo: '))
        await session.decide_auth(Credential('a'))
        handle = FakeHandle()
        await session.on_channel_open(1, handle)
        await session.on_data(1, b'x')
        assert handle.written == [b'echo: x']

    asyncio.run(scenario())


def test_channel_open_requires_active_session():
    """测试未认证时打开通道被拒绝"""
    async def scenario():
        registry = ChannelRegistry()
        session = make_session(1, registry)
        with pytest.raises(SessionClosedError):
            await session.on_channel_open(1, FakeHandle())
        assert len(registry) == 0

    asyncio.run(scenario())


def test_channel_close_unregisters():
    """测试关闭通道后注销，重复关闭无副作用"""
    async def scenario():
        registry = ChannelRegistry()
        session = make_session(1, registry)
        await session.decide_auth(Credential('a'))
        await session.on_channel_open(1, FakeHandle())
        await session.on_channel_open(2, FakeHandle())

        await session.on_channel_close(1)
        await session.on_channel_close(1)
        assert await registry.entries() == [(1, 2)]
        assert session.channels == {2}

    asyncio.run(scenario())


def test_close_removes_all_channels():
    """测试关闭会话后注册表中不再有该连接的条目"""
    async def scenario():
        registry = ChannelRegistry()
        closed = []
        a = make_session(1, registry, on_closed=closed.append)
        b = make_session(2, registry)
        for session in (a, b):
            await session.decide_auth(Credential('x'))
        await a.on_channel_open(1, FakeHandle())
        await a.on_channel_open(2, FakeHandle())
        await b.on_channel_open(1, FakeHandle())

        await a.close()
        await a.close()

        assert a.state is SessionState.CLOSED
        assert await registry.entries() == [(2, 1)]
        assert closed == [a], "on_closed 只应调用一次"

        with pytest.raises(SessionClosedError):
            await a.on_channel_open(3, FakeHandle())

    asyncio.run(scenario())


def test_worker_processes_events_in_order():
    """测试工作任务按到达顺序处理事件"""
    async def scenario():
        registry = ChannelRegistry()
        session = make_session(1, registry)
        await session.decide_auth(Credential('a'))
        session.start()

        handle = FakeHandle()
        channel_id = session.next_channel_id()
        session.post_open(channel_id, handle)
        for chunk in (b'one', b'two', b'three'):
            session.post_data(channel_id, chunk)

        await wait_until(lambda: len(handle.written) == 3)
        assert handle.written == [b'Got data: one', b'Got data: two', b'Got data: three']

        session.post_close(channel_id)
        await wait_until(lambda: len(registry) == 0)
        await session.close()

    asyncio.run(scenario())


def test_worker_refuses_channel_after_rejection():
    """测试被拒绝的会话上打开的通道会被关闭"""
    async def scenario():
        registry = ChannelRegistry()
        session = make_session(1, registry, auth_policy=lambda c: False)
        await session.decide_auth(Credential('a', 'password', 'x'))
        session.start()

        handle = FakeHandle()
        session.post_open(1, handle)
        await wait_until(lambda: handle.closed)
        assert len(registry) == 0
        await session.close()
        assert session.state is SessionState.REJECTED

    asyncio.run(scenario())


def test_connection_lost_cleans_up():
    """测试传输层断开后异步清理"""
    async def scenario():
        registry = ChannelRegistry()
        session = make_session(1, registry)
        await session.decide_auth(Credential('a'))
        session.start()
        session.post_open(1, FakeHandle())
        await wait_until(lambda: len(registry) == 1)

        session.connection_lost(ConnectionResetError("对端重置"))
        await wait_until(lambda: session.state is SessionState.CLOSED and len(registry) == 0)

    asyncio.run(scenario())


def test_idle_timeout_closes_connection():
    """测试空闲超时后关闭连接并清空注册表"""
    async def scenario():
        registry = ChannelRegistry()
        session = make_session(1, registry, make_config(inactivity_timeout=0.1))
        transport_closed = []
        session.close_transport = lambda: transport_closed.append(True)
        await session.decide_auth(Credential('a'))
        session.start()
        session.post_open(1, FakeHandle())

        await wait_until(lambda: session.state is SessionState.CLOSED, timeout=2.0)
        assert transport_closed == [True]
        assert len(registry) == 0

    asyncio.run(scenario())


def test_activity_postpones_idle_timeout():
    """测试持续的活动会推迟空闲超时"""
    async def scenario():
        registry = ChannelRegistry()
        session = make_session(1, registry, make_config(inactivity_timeout=0.3))
        await session.decide_auth(Credential('a'))
        session.start()
        handle = FakeHandle()
        session.post_open(1, handle)

        for _ in range(5):
            await asyncio.sleep(0.1)
            session.post_data(1, b'.')
        assert session.state is SessionState.ACTIVE

        await session.close()

    asyncio.run(scenario())


# ============================================================================
# 远程端口转发
# ============================================================================

def test_forward_request_spawns_agent_without_blocking():
    """测试转发请求立即返回，转发任务随后打开通道并写入负载"""
    async def scenario():
        registry = ChannelRegistry()
        forwarder = ForwardingAgent(open_delay=0)
        session = make_session(1, registry, forwarder=forwarder)
        await session.decide_auth(Credential('a'))

        requests = []
        writer = FakeChannel()

        async def opener(request):
            requests.append(request)
            return writer

        session.forward_opener = opener
        assert session.on_forward_request('localhost', 8022) is True
        assert requests == [], "转发通道不应在请求应答之前打开"

        await asyncio.gather(*forwarder.tasks)
        assert requests == [ForwardRequest('localhost', 8022, '1.2.3.4', 1234)]
        assert writer.data == b'Hello from a forwarded port'
        assert writer.eof and writer.closed
        assert len(registry) == 0, "转发通道不进入注册表"

    asyncio.run(scenario())


def test_forward_request_rejected_by_policy():
    """测试转发策略拒绝请求"""
    async def scenario():
        session = make_session(1, ChannelRegistry(), forward_policy=lambda a, p: p != 22)
        await session.decide_auth(Credential('a'))

        async def opener(request):
            return FakeChannel()

        session.forward_opener = opener
        assert session.on_forward_request('localhost', 22) is False
        assert session.on_forward_request('localhost', 8080) is True
        await asyncio.gather(*session.forwarder.tasks)

    asyncio.run(scenario())


def test_forward_request_requires_active_session():
    """测试未认证会话的转发请求被拒绝"""
    async def scenario():
        session = make_session(1, ChannelRegistry())

        async def opener(request):
            return FakeChannel()

        session.forward_opener = opener
        assert session.on_forward_request('localhost', 8022) is False
        assert not session.forwarder.tasks

    asyncio.run(scenario())
