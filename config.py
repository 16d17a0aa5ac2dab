"""
Hubless 中继 - 配置管理模块
加载和保存 YAML 配置文件。

功能概述:
本模块提供了配置管理功能，包括：
1. 服务器配置数据类（监听地址、端口、超时、回显前缀、转发参数）
2. YAML 配置文件的加载和保存
3. 配置校验

配置文件格式（config.yaml）:

    server:
      host: 0.0.0.0
      ssh_port: 2222
      http_port: 3000
      host_key_file: ssh_host_ed25519_key
      inactivity_timeout: 3600
    logging:
      level: INFO
"""

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class ServerConfig:
    """
    服务器配置数据类

    Attributes:
        host: 监听地址（默认: "0.0.0.0"）
        ssh_port: SSH 中继端口（默认: 2222）
        http_port: HTTP 接口端口（默认: 3000）
        host_key_file: 主机密钥文件，不存在时启动时生成；为空则使用临时密钥
        inactivity_timeout: 连接空闲超时（秒，默认: 3600），0 表示不超时
        auth_timeout: 单次认证决策的时间预算（秒，默认: 10）
        auth_rejection_time: 认证被拒绝后的延迟（秒，默认: 3）
        auth_rejection_time_initial: 首次认证尝试被拒绝后的延迟（秒，默认: 0）
        login_timeout: 整个握手和认证阶段的超时（秒，默认: 30）
        echo_prefix: 回显和广播数据的前缀（默认: "Got data: "）
        forward_origin_host: 转发通道声明的来源地址（默认: "1.2.3.4"）
        forward_origin_port: 转发通道声明的来源端口（默认: 1234）
        forward_payload: 写入转发通道的负载
        forward_open_delay: 打开转发通道前的等待时间（秒，默认: 0.1）
    """
    host: str = "0.0.0.0"
    ssh_port: int = 2222
    http_port: int = 3000
    host_key_file: str = "ssh_host_ed25519_key"
    inactivity_timeout: float = 3600
    auth_timeout: float = 10
    auth_rejection_time: float = 3
    auth_rejection_time_initial: float = 0
    login_timeout: float = 30
    echo_prefix: str = "Got data: "
    forward_origin_host: str = "1.2.3.4"
    forward_origin_port: int = 1234
    forward_payload: str = "Hello from a forwarded port"
    forward_open_delay: float = 0.1

    def validate(self):
        """
        校验配置

        Raises:
            ValueError: 端口超出范围或超时为负数
        """
        for name in ('ssh_port', 'http_port', 'forward_origin_port'):
            value = getattr(self, name)
            if not isinstance(value, int) or not 0 <= value <= 65535:
                raise ValueError(f"{name} 超出范围: {value}")

        for name in ('inactivity_timeout', 'auth_timeout', 'auth_rejection_time',
                     'auth_rejection_time_initial', 'login_timeout', 'forward_open_delay'):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} 不能为负数: {value}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServerConfig':
        """
        从字典创建配置，忽略未知字段

        Args:
            data: 配置文件中 server 部分的内容

        Returns:
            ServerConfig: 配置对象
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"忽略未知配置项: {', '.join(sorted(unknown))}")
        config = cls(**{k: v for k, v in data.items() if k in known})
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}

    if not isinstance(data, dict):
        return {}
    return data


def save_config(config_file: str, config_data: Dict[str, Any]) -> bool:
    """
    保存配置文件

    Args:
        config_file: 配置文件路径
        config_data: 要保存的配置数据字典

    Returns:
        bool: 保存成功返回 True，失败返回 False
    """
    try:
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, default_flow_style=False, allow_unicode=True)
        return True
    except OSError as e:
        logger.error(f"保存配置文件失败: {e}")
        return False


def load_server_config(config_file: str) -> ServerConfig:
    """加载配置文件中的 server 部分"""
    data = load_config(config_file)
    return ServerConfig.from_dict(data.get('server') or {})
