"""
Connection settings for ``RedisBackend``.

Timeouts are in seconds like every other reliastore setting. ``from_env``
reads ``REDIS_HOST``, ``REDIS_PORT``, ``REDIS_PASSWORD``, ``REDIS_DB``,
``REDIS_SSL``, ``REDIS_MAX_CONNECTIONS``, ``REDIS_CONNECT_TIMEOUT_S`` and
``REDIS_SOCKET_TIMEOUT_S`` (the prefix is configurable).
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Optional

from reliastore.core.config import env_bool, env_str

REDIS_MAX_DB = 15


@dataclass(frozen=True, slots=True)
class RedisConfig:
    """
    Where the record and lease keys live.

        backend = RedisBackend(config=RedisConfig(host="cache.internal", ssl=True))
    """

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    ssl: bool = False
    max_connections: int = 50
    connect_timeout_s: float = 2.0
    socket_timeout_s: float = 5.0

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")
        if not 0 <= self.db <= REDIS_MAX_DB:
            raise ValueError(f"db must be between 0 and {REDIS_MAX_DB}, got {self.db}")
        if self.max_connections < 1:
            raise ValueError("max_connections must be positive")
        if min(self.connect_timeout_s, self.socket_timeout_s) <= 0:
            raise ValueError("timeouts must be positive")

    @classmethod
    def from_env(cls, prefix: str = "REDIS") -> RedisConfig:
        """Unset variables keep the field defaults."""
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = env_str(prefix, f.name.upper())
            if not raw:
                continue
            if f.name == "ssl":
                values["ssl"] = env_bool(prefix, "SSL", False)
            elif f.name in ("port", "db", "max_connections"):
                values[f.name] = int(raw)
            elif f.name.endswith("_timeout_s"):
                values[f.name] = float(raw)
            else:
                values[f.name] = raw
        return cls(**values)

    def get_connection_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``redis.asyncio.Redis``; replies are decoded to str."""
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "ssl": self.ssl,
            "max_connections": self.max_connections,
            "socket_connect_timeout": self.connect_timeout_s,
            "socket_timeout": self.socket_timeout_s,
            "decode_responses": True,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs
