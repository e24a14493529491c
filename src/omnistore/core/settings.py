"""Runtime settings for omnistore.

All tunables that are not part of a Credential live here: timeouts, pool
sizing, schema sampling, key-scan bounds and the read retry budget. Values
come from ``OMNISTORE_*`` environment variables or a ``.env`` file.

The Engine and each adapter receive a settings object at construction;
nothing reads the environment behind their back.

Examples:
    >>> from omnistore.core.settings import OmnistoreSettings
    >>> settings = OmnistoreSettings(query_timeout=5, pool_mode="pooled")
    >>> settings.pool_mode
    'pooled'

Tags:
    settings, configuration, pydantic, environment, omnistore

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OmnistoreSettings(BaseSettings):
    """Settings shared by the Engine and every adapter.

    Fields
    ──────
    connect_timeout          : Seconds to establish a connection
    query_timeout            : Per-call deadline for every operation
    pool_mode                : ``per_call`` opens/closes per operation,
                               ``pooled`` keeps adapter-owned pools
    pool_size / max_overflow : Relational pool bounds (``pooled`` only)
    pool_timeout             : Seconds to wait for a free pooled connection
    pool_recycle             : Idle seconds before a pooled connection is evicted
    pool_max_engines         : Distinct credentials pooled per adapter (LRU)
    schema_sample_size       : Documents sampled to infer collection attributes
    count_rows               : Compute total counts when browsing
    key_scan_batch           : COUNT hint for key-value SCAN calls
    key_scan_limit           : Keys sampled when grouping key namespaces
    kv_value_limit           : Elements fetched per key-value aggregate value
    search_max_result_window : Deepest from/size page before search_after
    read_retry_attempts      : Attempts for read-only calls on timeout
    read_retry_delay         : Base delay between read retries
    """

    model_config = SettingsConfigDict(
        env_prefix="OMNISTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Timeouts ─────────────────────────────────────────────────
    connect_timeout: float = Field(default=10.0, gt=0)
    query_timeout: float = Field(default=30.0, gt=0)

    # ── Pooling ──────────────────────────────────────────────────
    pool_mode: Literal["per_call", "pooled"] = "per_call"
    pool_size: int = Field(default=5, gt=0)
    pool_max_overflow: int = Field(default=5, ge=0)
    pool_timeout: float = Field(default=10.0, gt=0)
    pool_recycle: int = Field(default=300, gt=0)
    pool_max_engines: int = Field(default=16, gt=0)

    # ── Introspection & browsing ─────────────────────────────────
    schema_sample_size: int = Field(default=50, gt=0)
    count_rows: bool = True
    key_scan_batch: int = Field(default=500, gt=0)
    key_scan_limit: int = Field(default=10_000, gt=0)
    kv_value_limit: int = Field(default=1_000, gt=0)
    search_max_result_window: int = Field(default=10_000, gt=0)

    # ── Retry (read-only operations) ─────────────────────────────
    read_retry_attempts: int = Field(default=2, ge=1)
    read_retry_delay: float = Field(default=0.2, ge=0)


def load_settings(**overrides: object) -> OmnistoreSettings:
    """Build settings from the environment, applying explicit overrides."""
    return OmnistoreSettings(**overrides)


__all__ = ["OmnistoreSettings", "load_settings"]
