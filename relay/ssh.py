"""
paramiko 适配层

paramiko 的 Transport 在自己的线程中运行，ServerInterface 的回调也在该线程中执行。
本模块把这些回调转换成 SessionHandler 的事件，投递到 asyncio 事件循环：

- RelayServerInterface: 认证和 tcpip-forward 请求（传输线程，同步等待事件循环的决策）
- SSHConnection: 握手、接受会话通道、登录超时和断开通知（每个连接一个线程）
- ParamikoChannel: 把 paramiko.Channel 包装成注册表使用的通道句柄

通道数据不占用线程：channel.fileno() 提供的管道注册到事件循环，
可读时在事件循环中读取并投递给会话。
"""

import asyncio
import concurrent.futures
import itertools
import logging
import socket
import threading
import time
from typing import Callable, Optional

import paramiko

from .forwarding import ForwardRequest
from .session import Credential, SessionHandler, SessionState

logger = logging.getLogger('hubless-ssh')

RECV_SIZE = 32768
ACCEPT_POLL_INTERVAL = 1.0
# 单个通道允许积压的待发送字节数，超过后关闭该通道
MAX_PENDING = 1024 * 1024
FLUSH_RETRY_INTERVAL = 0.05
# 请求端口为 0 的转发从临时端口范围起编号
ALLOCATED_PORT_BASE = 49152


class ParamikoChannel:
    """
    paramiko.Channel 的通道句柄包装

    write() 在事件循环中调用，不能阻塞：数据先进入待发送缓冲区，只在发送
    窗口有空间时调用 chan.send()，窗口已满时定时重试。对端不读取导致积压
    超过 max_pending 字节时关闭该通道，写入失败只影响这一个通道。

    Attributes:
        chan: paramiko.Channel
        loop: asyncio 事件循环
        max_pending: 允许积压的最大字节数
        on_close: 通道关闭后的回调（可选）
    """

    def __init__(self, chan: paramiko.Channel, loop: asyncio.AbstractEventLoop,
                 max_pending: int = MAX_PENDING,
                 on_close: Optional[Callable[[], None]] = None):
        self.chan = chan
        self.loop = loop
        self.max_pending = max_pending
        self.on_close = on_close
        self._pending = bytearray()
        self._eof_pending = False
        self._retry: Optional[asyncio.TimerHandle] = None
        self._fd: Optional[int] = None
        self._closed = False

    @property
    def pending(self) -> int:
        """尚未发出的字节数"""
        return len(self._pending)

    def watch(self, callback: Callable[[], None]):
        """通道可读时在事件循环中调用 callback"""
        self._fd = self.chan.fileno()
        self.loop.add_reader(self._fd, callback)

    def write(self, data: bytes):
        if self._closed or self.chan.closed:
            raise ConnectionError("通道已关闭")
        if len(self._pending) + len(data) > self.max_pending:
            self.close()
            raise ConnectionError(f"对端未读取，积压超过 {self.max_pending} 字节，通道已关闭")
        self._pending += data
        self._flush()

    def write_eof(self):
        self._eof_pending = True
        self._flush()

    def close(self):
        """关闭通道（可重复调用）"""
        if self._closed:
            return
        self._closed = True
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        self._pending.clear()
        # chan.close() 会关闭 fileno() 管道，必须先取消读取回调
        if self._fd is not None:
            self.loop.remove_reader(self._fd)
            self._fd = None
        self.chan.close()
        if self.on_close is not None:
            self.on_close()

    def _flush(self):
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        try:
            while self._pending and self.chan.send_ready():
                sent = self.chan.send(bytes(self._pending[:RECV_SIZE]))
                if sent == 0:
                    # 通道已关闭或已发送 EOF
                    self._pending.clear()
                    break
                del self._pending[:sent]
            if not self._pending and self._eof_pending:
                self._eof_pending = False
                self.chan.shutdown_write()
        except (OSError, paramiko.SSHException) as e:
            logger.debug(f"通道写入失败，丢弃 {len(self._pending)} 字节: {e}")
            self._pending.clear()
            self._eof_pending = False
            return

        if self._pending:
            self._retry = self.loop.call_later(FLUSH_RETRY_INTERVAL, self._flush)


class RelayServerInterface(paramiko.ServerInterface):
    """
    单个连接的 paramiko 服务器回调

    认证流程:
    1. 客户端的 none 试探交给认证策略，接受则无需凭据
    2. 否则开放 password 和 publickey 两种方式，每次尝试都交给认证策略
    3. 认证被拒绝（REJECTED）后由 SSHConnection 关闭连接

    所有回调都在 paramiko 传输线程中执行，需要会话状态的决策通过
    run_coroutine_threadsafe 交给事件循环，传输线程阻塞等待结果。
    """

    def __init__(self, session: SessionHandler, loop: asyncio.AbstractEventLoop,
                 decision_timeout: float):
        self.session = session
        self.loop = loop
        self.decision_timeout = decision_timeout
        self.transport: Optional[paramiko.Transport] = None
        self._allocated_ports = itertools.count(ALLOCATED_PORT_BASE)

    def _wait(self, coro, what: str):
        try:
            future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        except RuntimeError as e:
            coro.close()
            logger.debug(f"事件循环已关闭，放弃{what}: {e}")
            return False

        try:
            return future.result(self.decision_timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.warning(f"[conn {self.session.connection_id}] {what}超时")
            return False

    # ------------------------------------------------------------------
    # 认证
    # ------------------------------------------------------------------

    def _auth(self, credential: Credential) -> int:
        accepted = self._wait(self.session.decide_auth(credential), '认证决策')
        return paramiko.AUTH_SUCCESSFUL if accepted else paramiko.AUTH_FAILED

    def get_allowed_auths(self, username: str) -> str:
        return 'password,publickey'

    def check_auth_none(self, username: str) -> int:
        return self._auth(Credential(username))

    def check_auth_password(self, username: str, password: str) -> int:
        return self._auth(Credential(username, 'password', password))

    def check_auth_publickey(self, username: str, key: paramiko.PKey) -> int:
        return self._auth(Credential(username, 'publickey', key.fingerprint))

    # ------------------------------------------------------------------
    # 通道与转发
    # ------------------------------------------------------------------

    def check_channel_request(self, kind: str, chanid: int) -> int:
        if kind == 'session' and self.session.state is SessionState.ACTIVE:
            return paramiko.OPEN_SUCCEEDED
        logger.debug(f"[conn {self.session.connection_id}] 拒绝通道请求: kind={kind}")
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_pty_request(self, channel, term, width, height,
                                  pixelwidth, pixelheight, modes) -> bool:
        return True

    def check_channel_shell_request(self, channel) -> bool:
        return True

    def check_channel_exec_request(self, channel, command) -> bool:
        return True

    def check_port_forward_request(self, address: str, port: int):
        # 服务器不真正监听，port 为 0 时分配一个占位端口号回复给客户端
        if port == 0:
            port = next(self._allocated_ports)
            logger.debug(f"[conn {self.session.connection_id}] 为 {address} 分配转发端口 {port}")
        # 应答在本方法返回后才发出，转发任务会先等待 open_delay
        if self._wait(self._accept_forward(address, port), '转发决策'):
            return port
        return False

    async def _accept_forward(self, address: str, port: int) -> bool:
        return self.session.on_forward_request(address, port)

    def cancel_port_forward_request(self, address: str, port: int):
        logger.debug(f"[conn {self.session.connection_id}] 取消转发: {address}:{port}")

    async def open_forwarded(self, request: ForwardRequest) -> ParamikoChannel:
        """向客户端反向打开 forwarded-tcpip 通道"""
        if self.transport is None or not self.transport.is_active():
            raise ConnectionError("连接尚未建立或已断开")
        chan = await self.loop.run_in_executor(
            None,
            self.transport.open_forwarded_tcpip_channel,
            (request.origin_address, request.origin_port),
            (request.address, request.port),
        )
        return ParamikoChannel(chan, self.loop)


class SSHConnection:
    """
    单个 SSH 连接

    握手和接受通道在后台线程中完成（paramiko 的 accept 是阻塞调用），
    通道数据在事件循环中读取。

    Attributes:
        session: SessionHandler，连接对应的会话
        transport: paramiko.Transport
        interface: RelayServerInterface
    """

    def __init__(self, sock: socket.socket, peer, session: SessionHandler,
                 host_key: paramiko.PKey, loop: asyncio.AbstractEventLoop,
                 login_timeout: float):
        self.session = session
        self.loop = loop
        self.login_timeout = login_timeout

        sock.setblocking(True)
        self.transport = paramiko.Transport(sock)
        self.transport.add_server_key(host_key)

        decision_timeout = max(login_timeout, session.config.auth_timeout
                               + session.config.auth_rejection_time + 1)
        self.interface = RelayServerInterface(session, loop, decision_timeout)
        self.interface.transport = self.transport

        session.peer = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        session.forward_opener = self.interface.open_forwarded
        session.close_transport = self.close

        self._thread = threading.Thread(
            target=self._serve,
            name=f"hubless-conn-{session.connection_id}",
            daemon=True,
        )

    def start(self):
        """启动会话工作任务和连接线程（必须在事件循环中调用）"""
        logger.info(f"来自 {self.session.peer} 的连接: conn={self.session.connection_id}")
        self.session.start()
        self._thread.start()

    def close(self):
        """关闭底层连接"""
        self.transport.close()

    def _notify(self, callback, *args):
        try:
            self.loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug(f"[conn {self.session.connection_id}] 事件循环已关闭，丢弃通知")

    # ------------------------------------------------------------------
    # 连接线程
    # ------------------------------------------------------------------

    def _serve(self):
        error = None
        try:
            self.transport.start_server(server=self.interface)
            self._accept_channels()
        except (paramiko.SSHException, EOFError, OSError) as e:
            error = e
            logger.debug(f"[conn {self.session.connection_id}] SSH 连接出错: {e}")
        finally:
            self.transport.close()
            self._notify(self.session.connection_lost, error)

    def _accept_channels(self):
        deadline = time.monotonic() + self.login_timeout

        while self.transport.is_active():
            chan = self.transport.accept(ACCEPT_POLL_INTERVAL)
            if chan is not None:
                self._notify(self._channel_accepted, chan)
                continue

            if self.session.state is SessionState.REJECTED:
                logger.info(f"[conn {self.session.connection_id}] 认证失败，关闭连接")
                break
            if (self.login_timeout and not self.transport.is_authenticated()
                    and time.monotonic() > deadline):
                logger.info(f"[conn {self.session.connection_id}] 登录超时 ({self.login_timeout}s)")
                self._notify(self.session.reject, "登录超时")
                break

    # ------------------------------------------------------------------
    # 通道（事件循环中执行）
    # ------------------------------------------------------------------

    def _channel_accepted(self, chan: paramiko.Channel):
        channel_id = self.session.next_channel_id()
        handle = ParamikoChannel(
            chan, self.loop,
            on_close=lambda: self.session.post_close(channel_id),
        )
        self.session.post_open(channel_id, handle)
        handle.watch(lambda: self._channel_readable(handle, channel_id))
        # 注册读取回调之前通道可能已经收到数据或被关闭
        self._channel_readable(handle, channel_id)

    def _channel_readable(self, handle: ParamikoChannel, channel_id: int):
        chan = handle.chan
        while chan.recv_stderr_ready():
            chan.recv_stderr(RECV_SIZE)

        if chan.recv_ready():
            data = chan.recv(RECV_SIZE)
            if data:
                self.session.post_data(channel_id, data)
                return

        # 客户端发送 EOF 后不再有输入，通道随之关闭
        if chan.closed or chan.eof_received:
            handle.close()
