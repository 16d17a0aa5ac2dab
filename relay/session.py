"""
中继会话模块

本模块定义了 SessionHandler 类，负责单个 SSH 连接从认证到关闭的完整生命周期：
认证决策、通道打开、数据回显与广播、远程端口转发请求以及空闲超时。

SessionHandler 本身不依赖 paramiko，传输层（relay.ssh）只把回调事件投递进来，
因此可以用假句柄直接测试。
"""

import asyncio
import inspect
import itertools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Set, Union

from config import ServerConfig
from logger import add_context

from .broadcast import BroadcastRelay
from .forwarding import ChannelOpener, ForwardingAgent
from .registry import ChannelHandle, ChannelRegistry

logger = logging.getLogger('hubless-session')


class SessionState(Enum):
    """会话状态"""
    UNAUTHENTICATED = 'unauthenticated'
    ACTIVE = 'active'
    REJECTED = 'rejected'
    CLOSED = 'closed'


class SessionClosedError(Exception):
    """会话未处于活动状态时打开通道"""


@dataclass(frozen=True)
class Credential:
    """
    一次认证尝试

    Attributes:
        username: 客户端声明的用户名
        method: 认证方式（none / password / publickey）
        secret: 密码或公钥指纹，none 方式下为 None
    """
    username: str
    method: str = 'none'
    secret: Optional[str] = None


AuthPolicy = Callable[[Credential], Union[bool, Awaitable[bool]]]
ForwardPolicy = Callable[[str, int], bool]


def accept_all(credential: Credential) -> bool:
    """默认认证策略：接受所有客户端"""
    return True


def accept_all_forwards(address: str, port: int) -> bool:
    """默认转发策略：接受所有转发请求"""
    return True


def annotate(data: bytes, prefix: str = 'Got data: ') -> bytes:
    """给收到的数据加上前缀，无效的 UTF-8 序列被替换而不是拒绝"""
    return (prefix + data.decode('utf-8', errors='replace')).encode('utf-8')


# 事件类型
EVENT_OPEN = 'open'
EVENT_DATA = 'data'
EVENT_CLOSE = 'close'


class SessionHandler:
    """
    会话处理器 - 单个连接的状态机

    状态转换:
        UNAUTHENTICATED -> ACTIVE      认证通过
        UNAUTHENTICATED -> REJECTED    认证失败（终态）
        ACTIVE -> CLOSED               连接关闭或空闲超时（终态）

    传输层回调通过 post_open / post_data / post_close 把事件放入队列，
    由 run() 中的单个工作任务按到达顺序处理，保证同一连接内的数据有序。

    Attributes:
        connection_id: int，连接ID（由监听器分配，单调递增）
        registry: ChannelRegistry，共享通道注册表
        relay: BroadcastRelay，广播中继
        forwarder: ForwardingAgent，转发代理
        config: ServerConfig，服务器配置
        state: SessionState，当前状态
        channels: Set[int]，本连接当前打开的通道ID
        peer: str，客户端地址（IP:端口）
        forward_opener: 打开反向转发通道的函数，由传输层设置
        close_transport: 关闭底层连接的函数，由传输层设置
    """

    def __init__(
        self,
        connection_id: int,
        registry: ChannelRegistry,
        relay: BroadcastRelay,
        forwarder: ForwardingAgent,
        config: Optional[ServerConfig] = None,
        auth_policy: AuthPolicy = accept_all,
        forward_policy: ForwardPolicy = accept_all_forwards,
        on_closed: Optional[Callable[['SessionHandler'], None]] = None,
    ):
        self.connection_id = connection_id
        self.registry = registry
        self.relay = relay
        self.forwarder = forwarder
        self.config = config or ServerConfig()
        self.auth_policy = auth_policy
        self.forward_policy = forward_policy
        self.on_closed = on_closed

        self.state = SessionState.UNAUTHENTICATED
        self.auth_attempts = 0
        self.channels: Set[int] = set()
        self.peer = "unknown"
        self.forward_opener: Optional[ChannelOpener] = None
        self.close_transport: Optional[Callable[[], None]] = None

        self.last_activity = time.monotonic()
        self._channel_ids = itertools.count(1)
        self._events: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._closed = False

    def _log(self, level: int, msg: str):
        logger.log(level, f"[conn {self.connection_id}] {msg}")

    def touch(self):
        """记录一次连接活动"""
        self.last_activity = time.monotonic()

    def next_channel_id(self) -> int:
        """分配本连接内唯一的通道ID"""
        return next(self._channel_ids)

    # ------------------------------------------------------------------
    # 认证
    # ------------------------------------------------------------------

    async def decide_auth(self, credential: Credential) -> bool:
        """
        执行认证决策

        认证策略可以是普通函数或协程函数。协程策略必须在 auth_timeout 内完成，
        超时或抛出异常都视为拒绝。拒绝结果会延迟 auth_rejection_time 秒
        （首次尝试使用 auth_rejection_time_initial）后才返回。

        none 方式的试探被拒绝时会话保持未认证，客户端可以继续尝试其他方式；
        其他方式被拒绝时会话进入 REJECTED 终态。

        Args:
            credential: 认证尝试

        Returns:
            bool: True 表示接受
        """
        if self.state is not SessionState.UNAUTHENTICATED:
            return self.state is SessionState.ACTIVE

        first_attempt = self.auth_attempts == 0
        self.auth_attempts += 1

        try:
            decision = self.auth_policy(credential)
            if inspect.isawaitable(decision):
                decision = await asyncio.wait_for(decision, timeout=self.config.auth_timeout)
            accepted = bool(decision)
        except asyncio.TimeoutError:
            self._log(logging.WARNING, f"认证决策超时 ({self.config.auth_timeout}s): "
                                       f"user={credential.username}, method={credential.method}")
            accepted = False
        except Exception as e:
            self._log(logging.WARNING, f"认证策略出错: {e}")
            accepted = False

        if self._closed:
            return False

        if accepted:
            self.state = SessionState.ACTIVE
            self.touch()
            self._log(logging.INFO, f"认证成功: user={credential.username}, "
                                    f"method={credential.method}, peer={self.peer}")
            return True

        delay = (self.config.auth_rejection_time_initial if first_attempt
                 else self.config.auth_rejection_time)
        if delay > 0:
            await asyncio.sleep(delay)

        if credential.method != 'none' and self.state is SessionState.UNAUTHENTICATED:
            self.state = SessionState.REJECTED
            self._log(logging.WARNING, f"认证失败: user={credential.username}, "
                                       f"method={credential.method}, peer={self.peer}")
        return False

    def reject(self, reason: str):
        """认证阶段被传输层终止（例如登录超时），会话进入 REJECTED 终态"""
        if self.state is SessionState.UNAUTHENTICATED:
            self.state = SessionState.REJECTED
            self._log(logging.WARNING, f"认证阶段终止: {reason}, peer={self.peer}")

    # ------------------------------------------------------------------
    # 通道事件
    # ------------------------------------------------------------------

    async def on_channel_open(self, channel_id: int, handle: ChannelHandle) -> ChannelHandle:
        """
        注册新打开的通道

        Raises:
            SessionClosedError: 会话不处于 ACTIVE 状态
        """
        if self.state is not SessionState.ACTIVE:
            raise SessionClosedError(f"连接 {self.connection_id} 状态为 {self.state.value}")

        await self.registry.register(self.connection_id, channel_id, handle)

        # 注册期间会话可能已被关闭
        if self.state is not SessionState.ACTIVE:
            await self.registry.unregister(self.connection_id, channel_id)
            raise SessionClosedError(f"连接 {self.connection_id} 已关闭")

        self.channels.add(channel_id)
        self._log(logging.DEBUG, f"通道已打开: ch={channel_id}")
        return handle

    async def on_data(self, channel_id: int, data: bytes):
        """
        处理通道上收到的数据：加注释后回显到原通道，再广播给其他连接

        Args:
            channel_id: 收到数据的通道ID
            data: 原始数据
        """
        if self.state is not SessionState.ACTIVE:
            self._log(logging.DEBUG, f"会话未激活，丢弃 {len(data)} 字节")
            return

        annotated = annotate(data, self.config.echo_prefix)

        handle = await self.registry.get(self.connection_id, channel_id)
        if handle is None:
            self._log(logging.DEBUG, f"通道 {channel_id} 未注册，跳过回显")
        else:
            try:
                handle.write(annotated)
            except Exception as e:
                self._log(logging.DEBUG, f"回显失败: ch={channel_id}, error={e}")

        await self.relay.broadcast(self.connection_id, annotated)

    async def on_channel_close(self, channel_id: int):
        """注销已关闭的通道"""
        self.channels.discard(channel_id)
        await self.registry.unregister(self.connection_id, channel_id)
        self._log(logging.DEBUG, f"通道已关闭: ch={channel_id}")

    def on_forward_request(self, address: str, port: int) -> bool:
        """
        处理远程端口转发请求

        接受后立即调度转发代理并返回，不等待转发负载送达。

        Returns:
            bool: True 表示接受
        """
        if self.state is not SessionState.ACTIVE:
            return False
        self.touch()

        try:
            allowed = bool(self.forward_policy(address, port))
        except Exception as e:
            self._log(logging.WARNING, f"转发策略出错: {e}")
            allowed = False

        if not allowed:
            self._log(logging.INFO, f"拒绝转发请求: {address}:{port}")
            return False

        if self.forward_opener is None:
            self._log(logging.WARNING, f"没有可用的转发通道打开函数: {address}:{port}")
            return False

        request = self.forwarder.make_request(address, port)
        self.forwarder.spawn(self.forward_opener, request)
        self._log(logging.INFO, f"接受转发请求: {address}:{port}")
        return True

    # ------------------------------------------------------------------
    # 事件队列与工作任务
    # ------------------------------------------------------------------

    def post_open(self, channel_id: int, handle: ChannelHandle):
        self.touch()
        self._events.put_nowait((EVENT_OPEN, channel_id, handle))

    def post_data(self, channel_id: int, data: bytes):
        self.touch()
        self._events.put_nowait((EVENT_DATA, channel_id, data))

    def post_close(self, channel_id: int):
        self.touch()
        self._events.put_nowait((EVENT_CLOSE, channel_id, None))

    def start(self) -> asyncio.Task:
        """启动工作任务"""
        if self._worker is None:
            self.touch()
            self._worker = asyncio.create_task(self.run())
        return self._worker

    async def run(self):
        """
        工作任务主循环 - 按顺序处理事件，并负责空闲超时

        超过 inactivity_timeout 秒没有任何事件时关闭底层连接和会话。
        """
        add_context(connection_id=self.connection_id, peer=self.peer)
        timeout = self.config.inactivity_timeout

        try:
            while not self._closed:
                wait = None
                if timeout:
                    wait = timeout - (time.monotonic() - self.last_activity)
                    if wait <= 0:
                        await self._expire()
                        break
                try:
                    event = await asyncio.wait_for(self._events.get(), timeout=wait)
                except asyncio.TimeoutError:
                    continue
                await self._dispatch(*event)
        except asyncio.CancelledError:
            self._log(logging.DEBUG, "工作任务被取消")

    async def _dispatch(self, kind: str, channel_id: int, payload):
        try:
            if kind == EVENT_OPEN:
                await self.on_channel_open(channel_id, payload)
            elif kind == EVENT_DATA:
                await self.on_data(channel_id, payload)
            elif kind == EVENT_CLOSE:
                await self.on_channel_close(channel_id)
        except SessionClosedError as e:
            self._log(logging.WARNING, f"拒绝打开通道 {channel_id}: {e}")
            try:
                payload.close()
            except Exception as close_error:
                self._log(logging.DEBUG, f"关闭通道时出错: {close_error}")
        except Exception as e:
            self._log(logging.ERROR, f"处理 {kind} 事件出错: ch={channel_id}, error={e}")

    async def _expire(self):
        self._log(logging.INFO, f"空闲超过 {self.config.inactivity_timeout}s，关闭连接: {self.peer}")
        if self.close_transport is not None:
            try:
                self.close_transport()
            except Exception as e:
                self._log(logging.DEBUG, f"关闭底层连接时出错: {e}")
        await self.close()

    # ------------------------------------------------------------------
    # 关闭
    # ------------------------------------------------------------------

    def connection_lost(self, exc: Optional[Exception] = None):
        """传输层通知连接已断开，异步执行清理"""
        if exc:
            self._log(logging.INFO, f"连接断开: {self.peer}, error={exc}")
        else:
            self._log(logging.INFO, f"连接断开: {self.peer}")
        if self._close_task is None:
            self._close_task = asyncio.create_task(self.close())

    async def close(self):
        """
        关闭会话（可重复调用）

        停止工作任务并从注册表中移除本连接的全部通道。
        """
        if self._closed:
            return
        self._closed = True
        if self.state is not SessionState.REJECTED:
            self.state = SessionState.CLOSED

        worker = self._worker
        if worker is not None and worker is not asyncio.current_task() and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        removed = await self.registry.unregister_connection(self.connection_id)
        self.channels.clear()
        self._log(logging.INFO, f"会话结束: {self.peer}, 移除 {removed} 个通道")

        if self.on_closed is not None:
            self.on_closed(self)
