"""SSH连接建立模块

按调用方给定的顺序逐个尝试认证方式，每次尝试只携带一种方式：
- 认证被拒绝时继续尝试下一种方式
- 首次成功或首次出现非认证类错误时立即停止
- 全部被拒绝时抛出最后一次拒绝对应的 AuthenticationError

每次尝试的连接参数都由不可变的基础配置 ConnectOptions 与单个认证方式
重新组合生成，尝试之间不共享任何可变状态。失败的尝试会关闭自己创建的
客户端，不遗留任何连接资源。
"""
from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any

import paramiko

from sssh.auth_manager import CredentialMethod, KeyAuth
from sssh.config_manager import HostProfile
from sssh.exceptions import (
    AuthenticationError,
    ConfigurationError,
    CredentialError,
    SSHConnectionError,
)
from sssh.logger import target_logger
from sssh.settings import KnownHostsPolicy, SSSHSettings

ClientFactory = Callable[[], paramiko.SSHClient]


class HostKeyRejected(paramiko.SSHException):
    """服务端主机密钥不在known_hosts中。"""


class _RejectUnknownHost(paramiko.RejectPolicy):
    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        raise HostKeyRejected(f"Server {hostname!r} not found in known_hosts")


_HOST_KEY_POLICIES: dict[str, type[paramiko.MissingHostKeyPolicy]] = {
    "ignore": paramiko.AutoAddPolicy,
    "warn": paramiko.WarningPolicy,
    "reject": _RejectUnknownHost,
}

# 握手阶段的错误，与认证结果无关
_HOST_KEY_ERRORS = (paramiko.BadHostKeyException, HostKeyRejected)


def parse_address(address: str, *, default_port: int = 22) -> tuple[str, int]:
    """解析 ``host``、``host:port`` 或 ``[ipv6]:port`` 形式的地址。

    Args:
        address: 目标地址
        default_port: 地址未携带端口时使用的端口

    Returns:
        (host, port) 元组

    Raises:
        ConfigurationError: 地址为空或端口非法
    """
    text = address.strip()
    if not text:
        raise ConfigurationError("Connect: 地址不能为空")

    host, port_text = text, ""
    if text.startswith("["):
        end = text.find("]")
        if end == -1:
            raise ConfigurationError(f"Connect: 非法的IPv6地址: {address}")
        host = text[1:end]
        rest = text[end + 1 :]
        if rest:
            if not rest.startswith(":"):
                raise ConfigurationError(f"Connect: 非法的地址: {address}")
            port_text = rest[1:]
    elif text.count(":") == 1:
        host, port_text = text.split(":")

    if not host:
        raise ConfigurationError(f"Connect: 地址缺少主机名: {address}")
    if not port_text:
        return host, default_port
    if not port_text.isdigit() or not 0 < int(port_text) < 65536:
        raise ConfigurationError(f"Connect: 非法的端口: {address}")
    return host, int(port_text)


@dataclass(frozen=True)
class ConnectOptions:
    """单次连接尝试共享的基础配置（不可变）。

    Attributes:
        username: SSH用户名
        timeout: TCP连接超时时间，None表示不设超时
        known_hosts_policy: 未知主机密钥的处理策略
        known_hosts_file: 额外加载的known_hosts文件
    """

    username: str
    timeout: float | None = None
    known_hosts_policy: KnownHostsPolicy = "ignore"
    known_hosts_file: Path | None = None

    @classmethod
    def from_settings(cls, settings: SSSHSettings, *, username: str) -> ConnectOptions:
        return cls(
            username=username,
            timeout=settings.connect_timeout_seconds,
            known_hosts_policy=settings.known_hosts_policy,
            known_hosts_file=settings.known_hosts_file,
        )

    def attempt_kwargs(
        self, host: str, port: int, method: CredentialMethod
    ) -> Mapping[str, Any]:
        """组合出只包含一种认证方式的、只读的连接参数。"""
        return MappingProxyType(
            {
                "hostname": host,
                "port": port,
                "username": self.username,
                "timeout": self.timeout,
                **method.connect_kwargs(),
            }
        )


class ConnectionManager:
    """SSH连接建立器。

    连接建立后由调用方持有，并由调用方在所有依赖它的会话结束后关闭一次。
    """

    def __init__(
        self,
        *,
        settings: SSSHSettings,
        client_factory: ClientFactory = paramiko.SSHClient,
    ) -> None:
        """初始化连接建立器。

        Args:
            settings: sssh配置
            client_factory: SSHClient工厂，用于测试注入
        """
        self._settings = settings
        self._client_factory = client_factory

    def connect(
        self,
        address: str,
        methods: Sequence[CredentialMethod],
        *,
        username: str,
    ) -> paramiko.SSHClient:
        """逐个尝试认证方式，返回第一个认证成功的连接。

        Args:
            address: 目标地址（host、host:port 或 [ipv6]:port）
            methods: 按优先级排列的认证方式
            username: SSH用户名

        Returns:
            已认证的 paramiko.SSHClient

        Raises:
            ConfigurationError: 未提供任何认证方式或地址非法
            AuthenticationError: 所有认证方式均被拒绝
            SSHConnectionError: 出现非认证类的连接错误
        """
        methods = list(methods)
        if not methods:
            raise ConfigurationError("Connect: 未提供任何认证方式")

        host, port = parse_address(address, default_port=self._settings.default_port)
        options = ConnectOptions.from_settings(self._settings, username=username)

        log = target_logger(host=host, port=port, username=username)
        last_rejection: Exception | None = None
        for index, method in enumerate(methods, start=1):
            log.debug("SSH认证尝试 {}/{}: {}", index, len(methods), method.name)
            try:
                client = self._dial(host, port, options, method)
            except (paramiko.AuthenticationException, CredentialError) as exc:
                log.info("认证方式 {} 被拒绝: {}", method.name, exc)
                last_rejection = exc
                continue
            except (OSError, paramiko.SSHException) as exc:
                raise SSHConnectionError(
                    f"Connect: SSH连接失败: {host}:{port} - {exc}",
                    host=host,
                    port=port,
                ) from exc

            log.info("SSH连接已建立 ({})", method.name)
            return client

        raise AuthenticationError(
            f"Connect: 所有认证方式均被拒绝: {host}:{port} - {last_rejection}",
            host=host,
            port=port,
            attempts=len(methods),
        ) from last_rejection

    def connect_profile(
        self,
        profile: HostProfile,
        methods: Sequence[CredentialMethod] = (),
    ) -> paramiko.SSHClient:
        """按主机配置连接。

        配置了 key_filename 时，对应的私钥认证排在调用方给出的认证方式之前。
        """
        profile_methods: list[CredentialMethod] = []
        if profile.key_filename:
            profile_methods.append(KeyAuth(key_filename=profile.key_filename))
        return self.connect(
            profile.address,
            [*profile_methods, *methods],
            username=profile.username,
        )

    @contextmanager
    def open_connection(
        self,
        address: str,
        methods: Sequence[CredentialMethod],
        *,
        username: str,
    ) -> Iterator[paramiko.SSHClient]:
        """connect() 的上下文管理器形式，退出时关闭连接一次。"""
        client = self.connect(address, methods, username=username)
        try:
            yield client
        finally:
            client.close()

    def _dial(
        self,
        host: str,
        port: int,
        options: ConnectOptions,
        method: CredentialMethod,
    ) -> paramiko.SSHClient:
        client = self._client_factory()
        try:
            self._apply_host_key_policy(client, options)
            client.connect(**options.attempt_kwargs(host, port, method))
        except (paramiko.AuthenticationException, *_HOST_KEY_ERRORS):
            client.close()
            raise
        except paramiko.SSHException as exc:
            # 握手已完成、认证未成功：该方式没有可提交的凭据
            # （例如agent中没有密钥、口令为空），按拒绝处理
            rejected = self._authenticating(client)
            client.close()
            if rejected:
                raise CredentialError(
                    f"认证方式 {method.name} 无可用凭据: {exc}",
                    host=host,
                    username=options.username,
                ) from exc
            raise
        except Exception:
            client.close()
            raise
        return client

    @staticmethod
    def _authenticating(client: paramiko.SSHClient) -> bool:
        transport = client.get_transport()
        return (
            transport is not None
            and transport.is_active()
            and not transport.is_authenticated()
        )

    @staticmethod
    def _apply_host_key_policy(client: paramiko.SSHClient, options: ConnectOptions) -> None:
        if options.known_hosts_policy != "ignore":
            client.load_system_host_keys()
        if options.known_hosts_file is not None:
            client.load_host_keys(str(options.known_hosts_file))
        client.set_missing_host_key_policy(_HOST_KEY_POLICIES[options.known_hosts_policy]())
