#!/usr/bin/env python3
"""
Hubless 中继服务端

组成:
1. SSH 中继（paramiko）- 多连接、多通道，数据回显并广播给其他连接，
   支持远程端口反向转发
2. HTTP 接口（aiohttp）- 状态页和批量传输接口占位

两个监听器必须同时启动成功，否则进程退出。
"""

import argparse
import asyncio
import logging

from config import ServerConfig, load_config
from logger import LoggerManager
from relay.server import RelayServer

logger = logging.getLogger('hubless-server')


def build_config(args: argparse.Namespace, config_data: dict) -> ServerConfig:
    """合并配置文件和命令行参数（命令行优先）"""
    server_conf = dict(config_data.get('server') or {})

    overrides = {
        'host': args.host,
        'ssh_port': args.ssh_port,
        'http_port': args.http_port,
        'host_key_file': args.host_key,
    }
    server_conf.update({k: v for k, v in overrides.items() if v is not None})
    return ServerConfig.from_dict(server_conf)


def main():
    """主函数"""
    parser = argparse.ArgumentParser(description='Hubless SSH 中继服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--host', default=None, help='监听地址（默认: 0.0.0.0）')
    parser.add_argument('--ssh-port', type=int, default=None, help='SSH 端口（默认: 2222）')
    parser.add_argument('--http-port', type=int, default=None, help='HTTP 端口（默认: 3000）')
    parser.add_argument('--host-key', default=None, help='主机密钥文件（不存在时自动生成）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args()

    config_data = load_config(args.config)

    manager = LoggerManager()
    log_config = manager.load_config(config_data.get('logging'))
    if args.debug:
        log_config.level = 'DEBUG'
    manager.initialize(log_config)

    try:
        config = build_config(args, config_data)
    except (TypeError, ValueError) as e:
        logger.error(f"配置无效: {e}")
        return 1

    server = RelayServer(config)
    try:
        asyncio.run(server.serve_forever())
    except OSError as e:
        logger.error(f"监听器启动失败: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    return 0


if __name__ == '__main__':
    exit(main())
