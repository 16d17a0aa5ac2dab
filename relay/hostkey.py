"""
SSH 主机密钥管理

使用 cryptography 生成 Ed25519 主机密钥，以 OpenSSH 私钥格式保存，
再交给 paramiko 加载。配置了密钥文件路径时，文件不存在则在启动时生成并
持久化；没有配置路径时生成仅存在于内存中的临时密钥。
"""

import io
import logging
import os
from typing import Optional

import paramiko
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

logger = logging.getLogger('hubless-hostkey')


def generate_private_key() -> ed25519.Ed25519PrivateKey:
    """生成 Ed25519 私钥"""
    return ed25519.Ed25519PrivateKey.generate()


def private_key_bytes(key: ed25519.Ed25519PrivateKey) -> bytes:
    """把私钥序列化为未加密的 OpenSSH 私钥格式"""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_line(key: ed25519.Ed25519PrivateKey, comment: str = '') -> bytes:
    """生成 authorized_keys / known_hosts 风格的公钥行"""
    line = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    if comment:
        line += b' ' + comment.encode('utf-8')
    return line + b'\n'


def save_private_key(key: ed25519.Ed25519PrivateKey, path: str):
    """
    保存私钥文件

    参数:
        key: 要保存的私钥
        path: 保存路径，文件权限设置为 0o600
    """
    with open(path, 'wb') as f:
        f.write(private_key_bytes(key))

    try:
        os.chmod(path, 0o600)
    except (OSError, AttributeError):
        pass  # Windows 不支持 chmod


def save_public_key(key: ed25519.Ed25519PrivateKey, path: str, comment: str = ''):
    """保存公钥文件"""
    with open(path, 'wb') as f:
        f.write(public_key_line(key, comment))


def load_private_key(data: bytes) -> paramiko.Ed25519Key:
    """从 OpenSSH 私钥格式的字节串加载 paramiko 密钥"""
    return paramiko.Ed25519Key(file_obj=io.StringIO(data.decode('ascii')))


def load_or_generate_host_key(path: Optional[str] = None) -> paramiko.PKey:
    """
    加载或生成主机密钥

    Args:
        path: 私钥文件路径；为空时生成临时密钥

    Returns:
        paramiko.PKey: 可直接传给 Transport.add_server_key 的密钥
    """
    if not path:
        logger.info("未配置主机密钥文件，使用临时主机密钥")
        return load_private_key(private_key_bytes(generate_private_key()))

    if os.path.exists(path):
        logger.info(f"加载主机密钥: {path}")
        return paramiko.Ed25519Key(filename=path)

    key = generate_private_key()
    save_private_key(key, path)
    logger.info(f"已生成新的主机密钥: {path}")
    return load_private_key(private_key_bytes(key))
