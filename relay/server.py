"""
中继服务器模块 - 服务器生命周期管理

此模块包含 RelayServer 类，负责同时启动 SSH 中继服务器（paramiko）和
HTTP 接口（aiohttp），并为每个接受的 SSH 连接创建独立的 SessionHandler。

主要组件:
- RelayServer: 管理监听器、共享通道注册表和所有会话

使用示例:
    >>> config = ServerConfig(ssh_port=2222, http_port=3000)
    >>> server = RelayServer(config)
    >>> asyncio.run(server.serve_forever())
"""

import asyncio
import itertools
import logging
import socket
from typing import Dict, Optional

import paramiko
from aiohttp import web

from config import ServerConfig

from .batch_api import create_app
from .broadcast import BroadcastRelay
from .forwarding import ForwardingAgent
from .hostkey import load_or_generate_host_key
from .registry import ChannelRegistry
from .session import (
    AuthPolicy,
    ForwardPolicy,
    SessionHandler,
    accept_all,
    accept_all_forwards,
)
from .ssh import SSHConnection

logger = logging.getLogger('hubless-server')

LISTEN_BACKLOG = 100


class RelayServer:
    """
    中继服务器类 - 管理两个监听器和所有连接

    两个监听器必须同时可用：任意一个绑定失败时，已经启动的监听器会被关闭，
    异常继续向上抛出，由入口函数终止启动。

    Attributes:
        config: ServerConfig，服务器配置
        registry: ChannelRegistry，所有会话共享的通道注册表
        relay: BroadcastRelay，广播中继
        forwarder: ForwardingAgent，转发代理
        sessions: Dict[int, SessionHandler]，当前存活的会话
        host_key: paramiko.PKey，主机密钥（启动时加载或生成）
    """

    def __init__(
        self,
        config: ServerConfig,
        auth_policy: AuthPolicy = accept_all,
        forward_policy: ForwardPolicy = accept_all_forwards,
        registry: Optional[ChannelRegistry] = None,
        host_key: Optional[paramiko.PKey] = None,
    ):
        self.config = config
        self.auth_policy = auth_policy
        self.forward_policy = forward_policy
        self.registry = registry if registry is not None else ChannelRegistry()
        self.relay = BroadcastRelay(self.registry)
        self.forwarder = ForwardingAgent(
            origin_host=config.forward_origin_host,
            origin_port=config.forward_origin_port,
            payload=config.forward_payload.encode('utf-8'),
            open_delay=config.forward_open_delay,
        )
        self.host_key = host_key
        self.sessions: Dict[int, SessionHandler] = {}

        self._connection_ids = itertools.count(1)
        self._listener: Optional[socket.socket] = None
        self._accept_task: Optional[asyncio.Task] = None
        self._runner: Optional[web.AppRunner] = None
        self._stopped: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # 会话工厂
    # ------------------------------------------------------------------

    def new_session(self) -> SessionHandler:
        """为新连接创建会话，分配单调递增的连接ID"""
        connection_id = next(self._connection_ids)
        session = SessionHandler(
            connection_id,
            self.registry,
            self.relay,
            self.forwarder,
            self.config,
            auth_policy=self.auth_policy,
            forward_policy=self.forward_policy,
            on_closed=self._forget_session,
        )
        self.sessions[connection_id] = session
        return session

    def _forget_session(self, session: SessionHandler):
        self.sessions.pop(session.connection_id, None)

    # ------------------------------------------------------------------
    # 监听器
    # ------------------------------------------------------------------

    def _bind(self) -> socket.socket:
        infos = socket.getaddrinfo(self.config.host or None, self.config.ssh_port,
                                   type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
        family, socktype, proto, _, address = infos[0]
        sock = socket.socket(family, socktype, proto)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(address)
            sock.listen(LISTEN_BACKLOG)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock

    async def start_ssh(self):
        """启动 SSH 监听器"""
        if self.host_key is None:
            self.host_key = load_or_generate_host_key(self.config.host_key_file or None)

        self._listener = self._bind()
        self._accept_task = asyncio.create_task(self._accept_loop(self._listener))
        logger.info(f"SSH 中继服务器运行于 {self.config.host}:{self.ssh_port}")

    async def _accept_loop(self, listener: socket.socket):
        loop = asyncio.get_running_loop()
        while True:
            try:
                sock, peer = await loop.sock_accept(listener)
            except asyncio.CancelledError:
                raise
            except OSError as e:
                if self._listener is None:
                    break
                logger.warning(f"接受连接失败: {e}")
                continue

            try:
                connection = SSHConnection(
                    sock, peer, self.new_session(), self.host_key, loop,
                    self.config.login_timeout,
                )
            except (paramiko.SSHException, OSError) as e:
                logger.warning(f"初始化 SSH 连接失败: {peer}, error={e}")
                sock.close()
                continue
            connection.start()

    async def start_http(self):
        """启动 HTTP 监听器"""
        runner = web.AppRunner(create_app())
        await runner.setup()
        site = web.TCPSite(runner, self.config.host, self.config.http_port)
        try:
            await site.start()
        except Exception:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.info(f"HTTP 接口运行于 {self.config.host}:{self.http_port}")

    async def start(self):
        """
        启动两个监听器

        Raises:
            OSError: 任意一个监听器绑定失败
        """
        self._stopped = asyncio.Event()
        await self.start_ssh()
        try:
            await self.start_http()
        except Exception:
            await self.close()
            raise

    @property
    def ssh_port(self) -> int:
        return self._listener.getsockname()[1] if self._listener else 0

    @property
    def http_port(self) -> int:
        if self._runner is None or not self._runner.addresses:
            return 0
        return self._runner.addresses[0][1]

    async def serve_forever(self):
        """启动并一直运行，直到 close() 被调用"""
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.close()

    async def close(self):
        """关闭监听器、所有会话和未完成的转发任务"""
        if self._listener is not None:
            listener, self._listener = self._listener, None
            if self._accept_task is not None:
                self._accept_task.cancel()
                try:
                    await self._accept_task
                except asyncio.CancelledError:
                    pass
                self._accept_task = None
            listener.close()

        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()

        for session in list(self.sessions.values()):
            if session.close_transport is not None:
                session.close_transport()
            await session.close()
        await self.forwarder.close()

        if self._stopped is not None:
            self._stopped.set()
        logger.info(f"中继服务器已停止，注册表剩余 {len(self.registry)} 个通道")
