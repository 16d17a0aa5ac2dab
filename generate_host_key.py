#!/usr/bin/env python3
"""
为 Hubless 中继生成 SSH 主机密钥

服务端在启动时会自动生成缺失的主机密钥；此脚本用于提前生成，
以便把公钥分发给客户端的 known_hosts。

功能说明:
- 生成 Ed25519 私钥（OpenSSH 格式，权限 0600）
- 同时写出 .pub 公钥文件
"""

import argparse
import os
import sys

from relay.hostkey import generate_private_key, save_private_key, save_public_key


def main():
    """
    主函数 - 解析命令行参数并生成主机密钥

    命令行参数:
        --output: 私钥输出路径 (默认: ssh_host_ed25519_key)
        --comment: 公钥注释 (默认: hubless)
        --force: 覆盖已存在的密钥文件
    """
    parser = argparse.ArgumentParser(description='为 Hubless 中继生成 SSH 主机密钥')
    parser.add_argument('--output', '-o', default='ssh_host_ed25519_key',
                        help='私钥输出路径 (默认: ssh_host_ed25519_key)')
    parser.add_argument('--comment', default='hubless', help='公钥注释 (默认: hubless)')
    parser.add_argument('--force', '-f', action='store_true', help='覆盖已存在的密钥文件')
    args = parser.parse_args()

    private_path = args.output
    public_path = f"{private_path}.pub"

    existing = [p for p in (private_path, public_path) if os.path.exists(p)]
    if existing and not args.force:
        print(f"错误: 以下文件已存在: {', '.join(existing)}")
        print("使用 --force 覆盖")
        return 1

    output_dir = os.path.dirname(os.path.abspath(private_path))
    os.makedirs(output_dir, exist_ok=True)

    print("正在生成 Ed25519 主机密钥...")
    key = generate_private_key()
    save_private_key(key, private_path)
    save_public_key(key, public_path, args.comment)

    print(f"  私钥: {private_path}")
    print(f"  公钥: {public_path}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
