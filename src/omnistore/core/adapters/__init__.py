"""Engine adapters and the registry that routes to them.

Engine-family modules (``sql``, ``mongodb``, ``redis``, ``elasticsearch``)
import their drivers at module level and are loaded by
``create_default_engine()`` on first use.
"""

from omnistore.core.adapters.base import Adapter
from omnistore.core.adapters.plugin import Capability, Plugin
from omnistore.core.adapters.registry import Engine, Operation, create_default_engine

__all__ = ["Adapter", "Capability", "Plugin", "Engine", "Operation", "create_default_engine"]
