"""
广播中继模块

把某个连接上收到的数据投递到其他所有连接的已注册通道。投递是尽力而为的，
目标通道之间没有顺序保证；源连接自己的通道不在投递范围内（回显由会话处理）。
"""

import logging

from .registry import ChannelRegistry

logger = logging.getLogger('hubless-broadcast')


class BroadcastRelay:
    """基于通道注册表的广播中继"""

    def __init__(self, registry: ChannelRegistry):
        self.registry = registry

    async def broadcast(self, origin_connection_id: int, payload: bytes) -> int:
        """
        向除源连接外的所有已注册通道投递 payload

        Args:
            origin_connection_id: 数据来源的连接ID
            payload: 要投递的数据

        Returns:
            int: 成功投递的通道数量
        """
        delivered = await self.registry.for_each_except(
            origin_connection_id, lambda handle: handle.write(payload)
        )
        logger.debug(f"广播完成: 来源 conn={origin_connection_id}, "
                     f"{len(payload)} 字节, 投递 {delivered} 个通道")
        return delivered
