"""
远程端口转发模块

当客户端发送 tcpip-forward 请求时，服务器并不真正监听端口，而是立即向该
客户端反向打开一个 forwarded-tcpip 通道，写入一段固定负载，随后发送 EOF
并关闭通道。

转发任务与接受请求的会话相互独立运行：打开通道失败、写入失败都只在任务
内部记录日志，绝不会传回发起请求的会话。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Set

from .registry import ChannelHandle

logger = logging.getLogger('hubless-forwarding')

DEFAULT_ORIGIN_HOST = '1.2.3.4'
DEFAULT_ORIGIN_PORT = 1234
DEFAULT_PAYLOAD = b'Hello from a forwarded port'
DEFAULT_OPEN_DELAY = 0.1


@dataclass(frozen=True)
class ForwardRequest:
    """
    一次反向转发请求

    Attributes:
        address: 客户端请求转发的地址
        port: 客户端请求转发的端口
        origin_address: 转发通道上声明的来源地址（仅作为协议元数据）
        origin_port: 转发通道上声明的来源端口（仅作为协议元数据）
    """
    address: str
    port: int
    origin_address: str = DEFAULT_ORIGIN_HOST
    origin_port: int = DEFAULT_ORIGIN_PORT


# 打开转发通道的协程函数，返回通道句柄
ChannelOpener = Callable[[ForwardRequest], Awaitable[ChannelHandle]]


class ForwardingAgent:
    """
    转发代理 - 以独立任务的方式推送转发负载

    Attributes:
        origin_host: 默认来源地址
        origin_port: 默认来源端口
        payload: 写入转发通道的负载
        open_delay: 打开转发通道前的等待时间（秒）。客户端在处理完 tcpip-forward
            应答后才登记监听器，与应答同批到达的通道打开请求会被拒绝
        tasks: Set[asyncio.Task]，仍在运行的转发任务
    """

    def __init__(self, origin_host: str = DEFAULT_ORIGIN_HOST,
                 origin_port: int = DEFAULT_ORIGIN_PORT,
                 payload: bytes = DEFAULT_PAYLOAD,
                 open_delay: float = DEFAULT_OPEN_DELAY):
        self.origin_host = origin_host
        self.origin_port = origin_port
        self.payload = payload
        self.open_delay = open_delay
        self.tasks: Set[asyncio.Task] = set()

    def make_request(self, address: str, port: int) -> ForwardRequest:
        """用配置的来源地址构造转发请求"""
        return ForwardRequest(address, port, self.origin_host, self.origin_port)

    def spawn(self, opener: ChannelOpener, request: ForwardRequest) -> asyncio.Task:
        """
        调度一个转发任务并立即返回

        Args:
            opener: 打开转发通道的协程函数
            request: 转发请求

        Returns:
            asyncio.Task: 已调度的任务
        """
        task = asyncio.create_task(self.run(opener, request))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def run(self, opener: ChannelOpener, request: ForwardRequest) -> bool:
        """
        打开转发通道、写入负载、发送 EOF 并关闭

        Returns:
            bool: True 表示负载已写入并关闭通道
        """
        target = f"{request.address}:{request.port}"
        origin = f"{request.origin_address}:{request.origin_port}"
        if self.open_delay > 0:
            await asyncio.sleep(self.open_delay)

        logger.debug(f"打开转发通道: {target} (来源 {origin})")

        try:
            channel = await opener(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"打开转发通道失败: {target}, error={e}")
            return False

        try:
            channel.write(self.payload)
            channel.write_eof()
            logger.info(f"转发负载已发送: {target}, {len(self.payload)} 字节")
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"写入转发通道失败: {target}, error={e}")
            return False
        finally:
            try:
                channel.close()
            except Exception as e:
                logger.debug(f"关闭转发通道时出错: {e}")

    async def close(self):
        """取消所有未完成的转发任务"""
        tasks = list(self.tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
