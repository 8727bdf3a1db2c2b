from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

from sssh.exceptions import ConfigurationError
from sssh.settings import SSSHSettings


@dataclass(frozen=True)
class HostProfile:
    name: str
    address: str
    username: str
    key_filename: str | None = None


class ConfigManager:
    def __init__(
        self,
        settings: SSSHSettings,
        hosts: Mapping[str, HostProfile] | None = None,
    ) -> None:
        self.settings = settings
        self.hosts: dict[str, HostProfile] = dict(hosts or {})

    @classmethod
    def load(
        cls,
        *,
        config_file: Path | None = None,
        env_file: Path | None = None,
        env_prefix: str = "SSSH_",
    ) -> ConfigManager:
        config_path = config_file or Path(
            os.getenv(f"{env_prefix}CONFIG_FILE", "sssh_config.json")
        )

        json_data: dict[str, Any] = {}
        if config_path.exists() and config_path.is_file():
            json_data = cls._read_json(config_path)
        hosts = cls._parse_hosts(json_data.pop("hosts", {}))

        dotenv_data: dict[str, Any] = {}
        if env_file is not None:
            dotenv_data = cls._read_dotenv(env_file, env_prefix)
        elif Path(".env").exists():
            dotenv_data = cls._read_dotenv(Path(".env"), env_prefix)

        env_data = cls._read_env(os.environ, env_prefix)
        merged: dict[str, Any] = {
            **json_data,
            **dotenv_data,
            **env_data,
            "config_file": config_path,
        }
        settings = SSSHSettings.model_validate(merged)
        return cls(settings, hosts)

    def get_host(self, name: str) -> HostProfile:
        try:
            return self.hosts[name]
        except KeyError:
            raise ConfigurationError(f"未配置的主机: {name}") from None

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any]:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError("配置文件必须是JSON对象")
        return raw

    @staticmethod
    def _parse_hosts(raw: Any) -> dict[str, HostProfile]:
        # hosts: {"name": {"address": "h:22", "username": "u", "key_filename": "..."}}
        if not isinstance(raw, dict):
            raise ValueError("hosts配置必须是JSON对象")

        hosts: dict[str, HostProfile] = {}
        for name, entry in raw.items():
            if not isinstance(entry, dict) or not entry.get("address") or not entry.get("username"):
                raise ValueError(f"主机配置缺少address或username: {name}")
            key_filename = entry.get("key_filename")
            hosts[name] = HostProfile(
                name=name,
                address=str(entry["address"]),
                username=str(entry["username"]),
                key_filename=os.path.expanduser(key_filename) if key_filename else None,
            )
        return hosts

    @staticmethod
    def _read_dotenv(path: Path, env_prefix: str) -> dict[str, Any]:
        raw = dotenv_values(path)
        return ConfigManager._read_env(raw, env_prefix)

    @staticmethod
    def _read_env(mapping: Mapping[str, Any], env_prefix: str) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for field_name in SSSHSettings.model_fields.keys():
            env_key = f"{env_prefix}{field_name.upper()}"
            if env_key in mapping and mapping[env_key] not in (None, ""):
                data[field_name] = mapping[env_key]
        return data
