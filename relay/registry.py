"""
通道注册表模块 - 跨连接共享的通道表

此模块定义了 ChannelRegistry 类，它是整个中继服务器中唯一跨任务共享的
可变结构。注册表把 (连接ID, 通道ID) 映射到一个可写句柄，供回显、广播
和端口转发使用。

并发约定:
- 所有修改和遍历都通过同一把 asyncio.Lock 串行化
- 持锁期间只做字典操作，不做任何网络 I/O
- 广播时先在锁内复制句柄列表，再在锁外逐个写入
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger('hubless-registry')


class ChannelHandle(Protocol):
    """可写通道句柄（relay.ssh.ParamikoChannel 满足此协议）"""

    def write(self, data: bytes) -> None: ...

    def write_eof(self) -> None: ...

    def close(self) -> None: ...


RegistryKey = Tuple[int, int]


class ChannelRegistry:
    """
    通道注册表 - (连接ID, 通道ID) -> 写句柄

    注册表条目存在当且仅当对应通道处于打开状态。连接关闭时由会话调用
    unregister_connection() 一次性清除该连接的全部条目。

    Attributes:
        _entries: Dict[RegistryKey, ChannelHandle]，通道表
        _lock: asyncio.Lock，保护通道表的互斥锁
    """

    def __init__(self):
        self._entries: Dict[RegistryKey, ChannelHandle] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection_id: int, channel_id: int, handle: ChannelHandle):
        """
        注册通道（已存在则替换）

        Args:
            connection_id: 连接ID
            channel_id: 通道ID（仅在所属连接内唯一）
            handle: 通道写句柄
        """
        async with self._lock:
            replaced = (connection_id, channel_id) in self._entries
            self._entries[(connection_id, channel_id)] = handle
        logger.debug(f"注册通道: conn={connection_id}, ch={channel_id}, 替换={replaced}")

    async def unregister(self, connection_id: int, channel_id: int) -> bool:
        """
        注销通道，条目不存在时不做任何事

        Returns:
            bool: True 表示确实移除了一个条目
        """
        async with self._lock:
            removed = self._entries.pop((connection_id, channel_id), None) is not None
        if removed:
            logger.debug(f"注销通道: conn={connection_id}, ch={channel_id}")
        return removed

    async def unregister_connection(self, connection_id: int) -> int:
        """
        注销某个连接的全部通道

        Returns:
            int: 移除的条目数量
        """
        async with self._lock:
            keys = [key for key in self._entries if key[0] == connection_id]
            for key in keys:
                del self._entries[key]
        if keys:
            logger.debug(f"注销连接 {connection_id} 的 {len(keys)} 个通道")
        return len(keys)

    async def get(self, connection_id: int, channel_id: int) -> Optional[ChannelHandle]:
        """查找通道句柄，未找到返回 None"""
        async with self._lock:
            return self._entries.get((connection_id, channel_id))

    async def for_each_except(self, connection_id: int,
                              f: Callable[[ChannelHandle], object]) -> int:
        """
        对所有不属于指定连接的通道句柄执行 f

        句柄列表在锁内复制，f 在锁外调用。单个句柄上的失败（例如对端已经
        断开）只记录调试日志，不会中断其余句柄的遍历，也不会破坏通道表。

        Args:
            connection_id: 要排除的连接ID
            f: 作用于每个句柄的函数

        Returns:
            int: f 成功执行的次数
        """
        async with self._lock:
            targets = [(key, handle) for key, handle in self._entries.items()
                       if key[0] != connection_id]

        applied = 0
        for (conn_id, chan_id), handle in targets:
            try:
                f(handle)
                applied += 1
            except Exception as e:
                logger.debug(f"写入通道失败，已跳过: conn={conn_id}, ch={chan_id}, error={e}")
        return applied

    async def entries(self) -> List[RegistryKey]:
        """返回当前全部条目键的快照（已排序）"""
        async with self._lock:
            return sorted(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: RegistryKey) -> bool:
        return key in self._entries
