"""Built-in node processors grouped by category."""

from typing import List, Optional

from autoflow.services.gateways import Gateways
from .base import BaseProcessor, BaseNodeConfig
from .triggers import TRIGGER_PROCESSORS
from .actions import ACTION_PROCESSORS, build_action_processors
from .conditions import CONDITION_PROCESSORS
from .utility import UTILITY_PROCESSORS


def builtin_processors(gateways: Optional[Gateways] = None) -> List[BaseProcessor]:
    """One instance of every built-in processor; action processors share ``gateways``."""
    processors: List[BaseProcessor] = [cls() for cls in TRIGGER_PROCESSORS.values()]
    processors += build_action_processors(gateways)
    processors += [cls() for cls in CONDITION_PROCESSORS.values()]
    processors += [cls() for cls in UTILITY_PROCESSORS.values()]
    return processors


__all__ = [
    "BaseProcessor",
    "BaseNodeConfig",
    "TRIGGER_PROCESSORS",
    "ACTION_PROCESSORS",
    "CONDITION_PROCESSORS",
    "UTILITY_PROCESSORS",
    "build_action_processors",
    "builtin_processors",
]
