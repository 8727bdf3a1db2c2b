from __future__ import annotations

from typing import TypedDict


class CommandResultDict(TypedDict):
    command: str
    exit_status: int
    output: str


class RemoteFileInfoDict(TypedDict):
    path: str
    name: str
    mode: int
    size: int
    is_dir: bool
    is_file: bool
    exists: bool


class TransferResultDict(TypedDict):
    local_path: str
    remote_path: str
    bytes_transferred: int
    mode: int


class ErrorDict(TypedDict):
    error_type: str
    message: str
    details: dict[str, object]
