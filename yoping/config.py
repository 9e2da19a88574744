from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from yoping.core.push import DEFAULT_RECEIPT_DELAY, EXPO_PUSH_URL, EXPO_RECEIPTS_URL

ACCESS_TOKEN_ENV = "YOPING_EXPO_ACCESS_TOKEN"


class PushConfig(BaseModel):
    enabled: bool = True
    url: str = EXPO_PUSH_URL
    receipts_url: str = EXPO_RECEIPTS_URL
    access_token: Optional[str] = None
    receipt_delay: float = DEFAULT_RECEIPT_DELAY
    timeout: float = 10.0


class ServerConfig(BaseModel):
    listen: str = "0.0.0.0:3000"
    db_path: str = "yoping.db"
    send_timeout: float = 10.0
    ping_interval: Optional[float] = 20.0
    ping_timeout: Optional[float] = 20.0
    log_level: str = "INFO"
    push: PushConfig = Field(default_factory=PushConfig)

    @field_validator("listen")
    @classmethod
    def _listen_host_port(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError("listen must look like host:port")
        return value

    @property
    def host(self) -> str:
        return self.listen.rpartition(":")[0]

    @property
    def port(self) -> int:
        return int(self.listen.rpartition(":")[2])

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"


def load_config(path: Optional[Union[str, Path]] = None) -> ServerConfig:
    """Read the YAML config (absent keys take defaults) and apply env overrides."""

    data = {}
    if path is not None:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    cfg = ServerConfig.model_validate(data)
    token = os.getenv(ACCESS_TOKEN_ENV)
    if token:
        cfg.push.access_token = token
    return cfg


__all__ = ["ServerConfig", "PushConfig", "load_config", "ACCESS_TOKEN_ENV"]
