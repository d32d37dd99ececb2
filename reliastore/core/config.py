"""
Configuration Management for reliastore

Provides validated configuration with sensible defaults.
Supports environment variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from reliastore.core.types import Result, Ok, Err
from reliastore.core import constants as C

_TRUE = ("true", "1", "yes")
_FALSE = ("false", "0", "no")


def env_str(prefix: str, key: str, default: str = "") -> str:
    return os.environ.get(f"{prefix}_{key}", default)


def env_bool(prefix: str, key: str, default: bool) -> bool:
    """Unrecognised values fall back to ``default``."""
    value = env_str(prefix, key).lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


@dataclass(frozen=True)
class StoreSettings:
    """
    Engine settings shared by the persistence engine, the lease manager
    and the lifecycle scheduler.

    Attributes:
        lease_ttl_s: Lease TTL. Leases are renewed every ttl/2 and become
            stealable once older than 2 x ttl.
        autosave_interval_s: Period of the autosave loop.
        retries: Attempts per backend round-trip (load fetch, save update,
            lease update).
        retry_base_delay_s: Linear backoff base; attempt n waits base x n.
        backup_count: Capacity of each session's backup ring.
        session_timeout_s: Inactivity after which a session is force-saved
            and released.
        data_key_prefix: Prefix of record keys in the data backend.
        lock_key_prefix: Prefix of lease keys in the lease backend.
        compress: Wrap persisted records with the configured compressor.
        force_empty_writes: Issue the conditional update even when a save
            has no dirty paths.
    """

    lease_ttl_s: float = C.DEFAULT_LEASE_TTL_S
    autosave_interval_s: float = C.DEFAULT_AUTOSAVE_INTERVAL_S
    retries: int = C.DEFAULT_RETRIES
    retry_base_delay_s: float = C.DEFAULT_RETRY_BASE_DELAY_S
    backup_count: int = C.DEFAULT_BACKUP_COUNT
    session_timeout_s: float = C.DEFAULT_SESSION_TIMEOUT_S
    data_key_prefix: str = C.DEFAULT_DATA_KEY_PREFIX
    lock_key_prefix: str = C.DEFAULT_LOCK_KEY_PREFIX
    compress: bool = False
    force_empty_writes: bool = False

    def __post_init__(self) -> None:
        if self.lease_ttl_s < C.MIN_LEASE_TTL_S:
            raise ValueError(f"lease_ttl_s must be >= {C.MIN_LEASE_TTL_S}s")
        if self.retries < 1:
            raise ValueError(f"retries must be >= 1, got {self.retries}")
        if self.retry_base_delay_s < 0:
            raise ValueError("retry_base_delay_s must be >= 0")
        if self.backup_count < 0:
            raise ValueError("backup_count must be >= 0")
        if self.autosave_interval_s <= 0:
            raise ValueError("autosave_interval_s must be > 0")
        if self.session_timeout_s <= 0:
            raise ValueError("session_timeout_s must be > 0")

    @property
    def renew_interval_s(self) -> float:
        """Lease renewal / timeout sweep period."""
        return self.lease_ttl_s / 2

    @property
    def stale_after_s(self) -> float:
        """Age after which another owner's lease may be stolen."""
        return self.lease_ttl_s * C.LEASE_STALE_FACTOR

    @classmethod
    def from_env(cls, prefix: str = C.ENV_PREFIX) -> Result[StoreSettings, str]:
        """
        Load settings from environment variables.

        Environment variables are prefixed with RELIASTORE_.
        Example: RELIASTORE_LEASE_TTL_S, RELIASTORE_COMPRESS
        """
        def _get(key: str, default: str) -> str:
            return env_str(prefix, key, default)

        def _get_bool(key: str, default: bool) -> bool:
            return env_bool(prefix, key, default)

        try:
            return Ok(cls(
                lease_ttl_s=float(_get("LEASE_TTL_S", str(C.DEFAULT_LEASE_TTL_S))),
                autosave_interval_s=float(
                    _get("AUTOSAVE_INTERVAL_S", str(C.DEFAULT_AUTOSAVE_INTERVAL_S))
                ),
                retries=int(_get("RETRIES", str(C.DEFAULT_RETRIES))),
                retry_base_delay_s=float(
                    _get("RETRY_BASE_DELAY_S", str(C.DEFAULT_RETRY_BASE_DELAY_S))
                ),
                backup_count=int(_get("BACKUP_COUNT", str(C.DEFAULT_BACKUP_COUNT))),
                session_timeout_s=float(
                    _get("SESSION_TIMEOUT_S", str(C.DEFAULT_SESSION_TIMEOUT_S))
                ),
                data_key_prefix=_get("DATA_KEY_PREFIX", C.DEFAULT_DATA_KEY_PREFIX),
                lock_key_prefix=_get("LOCK_KEY_PREFIX", C.DEFAULT_LOCK_KEY_PREFIX),
                compress=_get_bool("COMPRESS", False),
                force_empty_writes=_get_bool("FORCE_EMPTY_WRITES", False),
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate cross-field invariants."""
        if self.session_timeout_s < self.renew_interval_s:
            return Err("session_timeout_s should not be shorter than lease_ttl_s / 2")
        if self.data_key_prefix == self.lock_key_prefix:
            return Err("data_key_prefix and lock_key_prefix must differ")
        return Ok(None)
