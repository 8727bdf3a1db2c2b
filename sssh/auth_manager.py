"""凭据与认证方式模块

每个认证方式只描述"如何用自己这一种方式认证"，生成传给
``paramiko.SSHClient.connect`` 的关键字参数，并显式关闭其它认证来源
（本地密钥搜索、SSH agent），保证一次连接尝试只使用一种方式。
"""
from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import keyring
import paramiko
from keyring.errors import KeyringError, PasswordDeleteError

from sssh.exceptions import CredentialError

PasswordCallback = Callable[[], str]

# 所有认证方式的公共基线：只使用显式提供的凭据
_EXCLUSIVE: dict[str, Any] = {
    "password": None,
    "pkey": None,
    "key_filename": None,
    "passphrase": None,
    "allow_agent": False,
    "look_for_keys": False,
}


class CredentialMethod:
    """单一认证方式的抽象基类。"""

    name = "abstract"

    def connect_kwargs(self) -> dict[str, Any]:
        raise NotImplementedError

    def __repr__(self) -> str:
        # 不输出任何口令内容
        return f"<{type(self).__name__}>"


@dataclass(frozen=True, repr=False)
class PasswordAuth(CredentialMethod):
    password: str

    name = "password"

    def connect_kwargs(self) -> dict[str, Any]:
        return {**_EXCLUSIVE, "password": self.password}


@dataclass(frozen=True, repr=False)
class PasswordCallbackAuth(CredentialMethod):
    """口令在真正尝试该方式时才通过回调获取（例如交互式提示输入）。"""

    callback: PasswordCallback

    name = "password-callback"

    def connect_kwargs(self) -> dict[str, Any]:
        try:
            password = self.callback()
        except Exception as exc:
            raise CredentialError(f"口令回调失败: {exc}") from exc
        return {**_EXCLUSIVE, "password": password}


@dataclass(frozen=True, repr=False)
class KeyAuth(CredentialMethod):
    """私钥认证。

    key_filename 在真正尝试该方式时才读取；文件缺失、格式错误或口令不对
    都视为该方式被拒绝（CredentialError），不影响后续认证方式。
    """

    key_filename: str | None = None
    pkey: paramiko.PKey | None = None
    passphrase: str | None = None

    name = "publickey"

    def __post_init__(self) -> None:
        if (self.key_filename is None) == (self.pkey is None):
            raise ValueError("key_filename与pkey必须且只能提供一个")

    def connect_kwargs(self) -> dict[str, Any]:
        return {**_EXCLUSIVE, "pkey": self.load_key()}

    def load_key(self) -> paramiko.PKey:
        if self.pkey is not None:
            return self.pkey
        path = os.path.expanduser(str(self.key_filename))
        passphrase = self.passphrase.encode() if self.passphrase is not None else None
        try:
            return paramiko.PKey.from_path(path, passphrase)
        # 加密私钥未给口令时 cryptography 抛出 TypeError
        except (OSError, TypeError, ValueError, paramiko.SSHException, paramiko.UnknownKeyType) as exc:
            raise CredentialError(f"私钥加载失败: {path} - {exc}") from exc


@dataclass(frozen=True, repr=False)
class AgentAuth(CredentialMethod):
    name = "agent"

    def connect_kwargs(self) -> dict[str, Any]:
        return {**_EXCLUSIVE, "allow_agent": True}


class AuthManager:
    def __init__(self, *, service_name: str = "sssh") -> None:
        self._service_name = service_name

    def store_credentials(
        self,
        *,
        host: str,
        username: str,
        password: str | None = None,
        private_key_path: str | None = None,
    ) -> None:
        if not password and not private_key_path:
            raise ValueError("至少提供password或private_key_path")

        try:
            if password:
                keyring.set_password(
                    self._service_name,
                    self._key(host, username, "password"),
                    password,
                )
            if private_key_path:
                keyring.set_password(
                    self._service_name,
                    self._key(host, username, "private_key_path"),
                    private_key_path,
                )
        except KeyringError as exc:
            raise CredentialError(
                f"凭据保存失败: {exc}", host=host, username=username
            ) from exc

    def credential_methods(self, *, host: str, username: str) -> list[CredentialMethod]:
        """按"密钥优先、口令其次"的顺序返回已保存凭据对应的认证方式。

        没有保存任何凭据时返回空列表，由连接阶段报告配置错误。
        """
        try:
            private_key_path = keyring.get_password(
                self._service_name,
                self._key(host, username, "private_key_path"),
            )
            password = keyring.get_password(
                self._service_name, self._key(host, username, "password")
            )
        except KeyringError as exc:
            raise CredentialError(
                f"凭据读取失败: {exc}", host=host, username=username
            ) from exc

        methods: list[CredentialMethod] = []
        if private_key_path:
            methods.append(KeyAuth(key_filename=private_key_path))
        if password:
            methods.append(PasswordAuth(password))
        return methods

    def delete_credentials(self, *, host: str, username: str) -> None:
        for field in ("password", "private_key_path"):
            try:
                keyring.delete_password(self._service_name, self._key(host, username, field))
            except PasswordDeleteError:
                continue

    @staticmethod
    def _key(host: str, username: str, field: str) -> str:
        return f"{host}|{username}|{field}".lower()
