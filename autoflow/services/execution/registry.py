"""Node processor and workflow trigger registries.

Processors are resolved by node type string. Registering a processor for a
type that already has one replaces it.
"""

from typing import Any, Awaitable, Dict, List, Optional, Protocol, runtime_checkable

from autoflow.core.logging import get_logger
from .models import NodeExecutionResult, NodeJobData, WorkflowExecutionInput

logger = get_logger(__name__)


@runtime_checkable
class NodeProcessor(Protocol):
    """Pluggable handler for one node type.

    ``validate`` is optional: a processor without one accepts any config.
    """

    node_type: str

    def process(self, job_data: NodeJobData) -> Awaitable[NodeExecutionResult]:
        ...


@runtime_checkable
class WorkflowTrigger(Protocol):
    """Turns an external event payload into a workflow execution request.

    ``validate(data) -> bool`` is optional, as for processors.
    """

    trigger_type: str

    def execute(self, data: Any) -> Awaitable[WorkflowExecutionInput]:
        ...


def validate_config(processor: NodeProcessor, config: Dict[str, Any]) -> bool:
    """Run the processor's validate hook; absence means always valid."""
    validate = getattr(processor, "validate", None)
    if validate is None:
        return True
    return bool(validate(config))


class NodeProcessorRegistry:
    """Maps node type identifiers to processors."""

    def __init__(self):
        self._processors: Dict[str, NodeProcessor] = {}

    def register(self, processor: NodeProcessor) -> None:
        node_type = getattr(processor, "node_type", None)
        if not node_type:
            raise ValueError("Processor must define a node_type")
        if node_type in self._processors:
            logger.info("Replacing node processor", node_type=node_type)
        self._processors[node_type] = processor
        logger.debug("Registered node processor", node_type=node_type,
                     processor=type(processor).__name__)

    def resolve(self, node_type: str) -> Optional[NodeProcessor]:
        return self._processors.get(node_type)

    def node_types(self) -> List[str]:
        return sorted(self._processors)

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._processors

    def __len__(self) -> int:
        return len(self._processors)


class TriggerRegistry:
    """Maps trigger type identifiers to workflow triggers."""

    def __init__(self):
        self._triggers: Dict[str, WorkflowTrigger] = {}

    def register(self, trigger: WorkflowTrigger) -> None:
        trigger_type = getattr(trigger, "trigger_type", None)
        if not trigger_type:
            raise ValueError("Trigger must define a trigger_type")
        self._triggers[trigger_type] = trigger
        logger.info("Registered trigger", trigger_type=trigger_type)

    def resolve(self, trigger_type: str) -> Optional[WorkflowTrigger]:
        return self._triggers.get(trigger_type)

    def trigger_types(self) -> List[str]:
        return sorted(self._triggers)
