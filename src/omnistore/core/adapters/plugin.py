"""Plugins: an adapter bound to one engine type with its capability flags."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from omnistore.core.models import EngineType

from .base import Adapter


class Capability(str, Enum):
    """Capability flags a plugin declares to the Engine."""

    RAW_EXECUTE = "raw_execute"
    MUTATIONS = "mutations"
    TRANSACTIONS = "transactions"  # read-your-writes; absent means eventual consistency
    ORDERING = "ordering"
    FILTERS = "filters"            # arbitrary conditions, not just key lookups
    FIXED_SCHEMA = "fixed_schema"
    GRAPH = "graph"
    FULL_TEXT = "full_text"


@dataclass(frozen=True)
class Plugin:
    engine_type: EngineType
    adapter: Adapter
    capabilities: frozenset[Capability] = field(default_factory=frozenset)
    storage_unit_label: str = "Tables"

    def __post_init__(self) -> None:
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def describe(self) -> dict[str, object]:
        return {
            "engine": self.engine_type.value,
            "adapter": type(self.adapter).__name__,
            "storage_unit_label": self.storage_unit_label,
            "capabilities": sorted(c.value for c in self.capabilities),
        }


__all__ = ["Capability", "Plugin"]
