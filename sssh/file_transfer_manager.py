"""SSH文件传输管理模块

提供基于SFTP的文件写入、复制、读取、拉取、删除和移动，特点：
- 每个操作独占一个SFTP会话，任何退出路径都会关闭
- 所有修改类操作在调用成功后再独立回读一次（lstat）确认后置条件，
  校验不通过时抛出 PostconditionError，与协议层错误区分开
- 目标路径以分隔符结尾时视为目录，自动追加源文件名
"""
from __future__ import annotations

import os
import posixpath
import stat
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import paramiko
from loguru import logger

from sssh.exceptions import FileTransferError, PostconditionError
from sssh.settings import SSSHSettings
from sssh.types import RemoteFileInfoDict, TransferResultDict

REMOTE_SEPARATORS = "/"
LOCAL_SEPARATORS = os.sep + (os.altsep or "")

_SFTP_ERRORS = (paramiko.SSHException, OSError, EOFError)


def resolve_destination_path(
    base: str,
    candidate_name: str,
    is_directory_hint: bool | None = None,
    *,
    separators: str = REMOTE_SEPARATORS,
) -> str:
    """计算最终目标路径。

    Args:
        base: 调用方给出的目标路径
        candidate_name: 目标为目录时追加的文件名（通常为源文件的base name）
        is_directory_hint: 目标是否为目录；None表示根据base是否以分隔符结尾判断
        separators: 视为路径分隔符的字符，第一个用于拼接

    Returns:
        目标为目录时返回 base + candidate_name，否则原样返回 base
    """
    ends_with_separator = base.endswith(tuple(separators))
    if is_directory_hint is None:
        is_directory_hint = ends_with_separator
    if not is_directory_hint:
        return base
    if ends_with_separator:
        return base + candidate_name
    return base + separators[0] + candidate_name


@dataclass(frozen=True)
class RemoteFileInfo:
    """远程文件元数据。

    Attributes:
        path: 查询使用的路径
        name: 文件名（base name）
        mode: 权限位（不含文件类型位）
        size: 文件大小
        is_dir: 是否为目录
        is_file: 是否为普通文件
        exists: 查询时文件是否存在
    """

    path: str
    name: str
    mode: int
    size: int
    is_dir: bool = False
    is_file: bool = True
    exists: bool = True

    @classmethod
    def from_attributes(cls, path: str, attrs: paramiko.SFTPAttributes) -> RemoteFileInfo:
        st_mode = int(attrs.st_mode or 0)
        return cls(
            path=path,
            name=posixpath.basename(path.rstrip("/")) or path,
            mode=stat.S_IMODE(st_mode),
            size=int(attrs.st_size or 0),
            is_dir=stat.S_ISDIR(st_mode),
            is_file=stat.S_ISREG(st_mode),
        )

    def to_dict(self) -> RemoteFileInfoDict:
        return {
            "path": self.path,
            "name": self.name,
            "mode": self.mode,
            "size": self.size,
            "is_dir": self.is_dir,
            "is_file": self.is_file,
            "exists": self.exists,
        }


@dataclass(frozen=True)
class TransferResult:
    """文件传输结果数据类。

    Attributes:
        local_path: 本地文件路径（纯内存写入时为空）
        remote_path: 最终使用的远程文件路径
        bytes_transferred: 已传输字节数
        mode: 设置到目标文件的权限位
    """

    local_path: str
    remote_path: str
    bytes_transferred: int
    mode: int

    def to_dict(self) -> TransferResultDict:
        return {
            "local_path": self.local_path,
            "remote_path": self.remote_path,
            "bytes_transferred": self.bytes_transferred,
            "mode": self.mode,
        }


class FileTransferManager:
    """文件传输管理器。

    封装了基于SFTP的文件操作。修改类操作都分为两个阶段：先执行修改，
    再通过独立的 lstat 回读确认结果，防止协议层"报告成功但未生效"。
    """

    def __init__(self, *, settings: SSSHSettings) -> None:
        self._settings = settings

    def write_file(
        self,
        conn: paramiko.SSHClient,
        *,
        data: bytes,
        remote_path: str,
        mode: int,
    ) -> TransferResult:
        """创建（或覆盖）远程文件，写入全部数据并设置权限。

        不检查目标是否已存在，总是覆盖。

        Raises:
            FileTransferError: 创建、写入或设置权限失败
            PostconditionError: 写入成功后回读不到文件，或大小不一致
        """
        with self._sftp_session(conn, "WriteFile") as sftp:
            try:
                remote_file = sftp.open(remote_path, "wb")
            except _SFTP_ERRORS as exc:
                raise FileTransferError(
                    f"WriteFile: 远程文件创建失败: {exc}",
                    operation="write",
                    remote_path=remote_path,
                ) from exc

            with remote_file:
                try:
                    for offset in range(0, len(data), self._settings.chunk_size):
                        remote_file.write(data[offset : offset + self._settings.chunk_size])
                except _SFTP_ERRORS as exc:
                    raise FileTransferError(
                        f"WriteFile: 远程文件写入失败: {exc}",
                        operation="write",
                        remote_path=remote_path,
                    ) from exc
                try:
                    remote_file.chmod(mode)
                except _SFTP_ERRORS as exc:
                    raise FileTransferError(
                        f"WriteFile: 远程文件权限设置失败: {exc}",
                        operation="chmod",
                        remote_path=remote_path,
                    ) from exc

            try:
                info = RemoteFileInfo.from_attributes(remote_path, sftp.lstat(remote_path))
            except _SFTP_ERRORS as exc:
                raise PostconditionError(
                    f"WriteFile: 传输成功后远程文件不存在: {exc}",
                    operation="write",
                    remote_path=remote_path,
                ) from exc

        if info.is_file and info.size != len(data):
            raise PostconditionError(
                f"WriteFile: 远程文件大小不一致: 期望 {len(data)}，实际 {info.size}",
                operation="write",
                remote_path=remote_path,
                details={"expected_size": len(data), "actual_size": info.size},
            )

        logger.debug("远程文件已写入: {} ({} bytes, mode={:o})", remote_path, len(data), mode)
        return TransferResult(
            local_path="",
            remote_path=remote_path,
            bytes_transferred=len(data),
            mode=mode,
        )

    def copy_file(
        self,
        conn: paramiko.SSHClient,
        *,
        local_path: str,
        remote_path: str,
    ) -> TransferResult:
        """把本地文件复制到远程，保留权限位。

        remote_path 以 "/" 结尾时视为目录，文件放在 remote_path + 本地文件名。
        """
        local = Path(local_path)
        try:
            local_stat = local.stat()
        except OSError as exc:
            raise FileTransferError(
                f"CopyFile: 本地文件stat失败: {exc}",
                operation="copy",
                local_path=local_path,
            ) from exc

        target = resolve_destination_path(remote_path, local.name)

        try:
            data = local.read_bytes()
        except OSError as exc:
            raise FileTransferError(
                f"CopyFile: 本地文件读取失败: {exc}",
                operation="copy",
                local_path=local_path,
                remote_path=target,
            ) from exc

        result = self.write_file(
            conn,
            data=data,
            remote_path=target,
            mode=stat.S_IMODE(local_stat.st_mode),
        )
        return TransferResult(
            local_path=str(local),
            remote_path=result.remote_path,
            bytes_transferred=result.bytes_transferred,
            mode=result.mode,
        )

    def read_file(
        self,
        conn: paramiko.SSHClient,
        *,
        remote_path: str,
    ) -> tuple[bytes, RemoteFileInfo]:
        """读取远程文件全部内容，返回 (内容, 元数据)。"""
        with self._sftp_session(conn, "ReadFile") as sftp:
            try:
                info = RemoteFileInfo.from_attributes(remote_path, sftp.lstat(remote_path))
            except _SFTP_ERRORS as exc:
                raise FileTransferError(
                    f"ReadFile: 远程文件stat失败: {exc}",
                    operation="read",
                    remote_path=remote_path,
                ) from exc

            try:
                with sftp.open(remote_path, "rb") as remote_file:
                    remote_file.prefetch(info.size)
                    data = remote_file.read()
            except _SFTP_ERRORS as exc:
                raise FileTransferError(
                    f"ReadFile: 远程文件读取失败: {exc}",
                    operation="read",
                    remote_path=remote_path,
                ) from exc

        return data, info

    def pull_file(
        self,
        conn: paramiko.SSHClient,
        *,
        remote_path: str,
        local_path: str,
    ) -> TransferResult:
        """把远程文件拉取到本地，保留权限位。

        local_path 以路径分隔符结尾时视为目录，文件放在 local_path + 远程文件名。
        """
        data, info = self.read_file(conn, remote_path=remote_path)
        target = resolve_destination_path(local_path, info.name, separators=LOCAL_SEPARATORS)

        try:
            Path(target).write_bytes(data)
            os.chmod(target, info.mode)
        except OSError as exc:
            raise FileTransferError(
                f"PullFile: 本地文件写入失败: {exc}",
                operation="pull",
                local_path=target,
                remote_path=remote_path,
            ) from exc

        return TransferResult(
            local_path=target,
            remote_path=remote_path,
            bytes_transferred=len(data),
            mode=info.mode,
        )

    def remove_file(self, conn: paramiko.SSHClient, *, path: str) -> None:
        """删除远程文件或空目录，并确认路径已不存在。

        Raises:
            FileTransferError: 删除失败或回读校验本身失败
            PostconditionError: 删除调用成功但路径仍然存在
        """
        with self._sftp_session(conn, "RemoveFile") as sftp:
            try:
                sftp.remove(path)
            except FileNotFoundError as exc:
                raise FileTransferError(
                    f"RemoveFile: 远程文件不存在: {exc}",
                    operation="remove",
                    remote_path=path,
                ) from exc
            except _SFTP_ERRORS as exc:
                # remove 不处理目录，退回到 rmdir
                try:
                    sftp.rmdir(path)
                except _SFTP_ERRORS:
                    raise FileTransferError(
                        f"RemoveFile: 远程文件删除失败: {exc}",
                        operation="remove",
                        remote_path=path,
                    ) from exc

            self._verify_absent(sftp, path, operation="remove", label="RemoveFile")

    def move_file(self, conn: paramiko.SSHClient, *, src: str, dst: str) -> None:
        """重命名远程文件，并确认源路径已不存在。"""
        with self._sftp_session(conn, "MoveFile") as sftp:
            try:
                sftp.rename(src, dst)
            except _SFTP_ERRORS as exc:
                raise FileTransferError(
                    f"MoveFile: 远程文件移动失败: {exc}",
                    operation="move",
                    remote_path=src,
                    details={"destination": dst},
                ) from exc

            self._verify_absent(sftp, src, operation="move", label="MoveFile")

    def get_file_info(self, conn: paramiko.SSHClient, *, path: str) -> RemoteFileInfo:
        with self._sftp_session(conn, "Stat") as sftp:
            try:
                return RemoteFileInfo.from_attributes(path, sftp.lstat(path))
            except _SFTP_ERRORS as exc:
                raise FileTransferError(
                    f"Stat: 远程文件stat失败: {exc}",
                    operation="stat",
                    remote_path=path,
                ) from exc

    def exists(self, conn: paramiko.SSHClient, *, path: str) -> bool:
        with self._sftp_session(conn, "Exists") as sftp:
            try:
                sftp.lstat(path)
            except FileNotFoundError:
                return False
            except _SFTP_ERRORS as exc:
                raise FileTransferError(
                    f"Exists: 远程文件stat失败: {exc}",
                    operation="stat",
                    remote_path=path,
                ) from exc
            return True

    @staticmethod
    def _verify_absent(
        sftp: paramiko.SFTPClient,
        path: str,
        *,
        operation: str,
        label: str,
    ) -> None:
        try:
            sftp.lstat(path)
        except FileNotFoundError:
            return
        except _SFTP_ERRORS as exc:
            raise FileTransferError(
                f"{label}: 无法确认操作结果: {exc}",
                operation=operation,
                remote_path=path,
            ) from exc
        raise PostconditionError(
            f"{label}: 操作成功后源路径仍然存在: {path}",
            operation=operation,
            remote_path=path,
        )

    @contextmanager
    def _sftp_session(
        self, conn: paramiko.SSHClient, label: str
    ) -> Iterator[paramiko.SFTPClient]:
        try:
            sftp = conn.open_sftp()
        except _SFTP_ERRORS as exc:
            raise FileTransferError(f"{label}: SFTP会话创建失败: {exc}") from exc

        try:
            yield sftp
        finally:
            try:
                sftp.close()
            except _SFTP_ERRORS as exc:
                logger.warning("SFTP会话关闭失败: {}", exc)
