"""Workflow definition repository.

The engine only reads definitions; storage is owned by the application. The
in-memory implementation backs tests and embedded use.
"""

import copy
from typing import Any, Dict, List, Optional, Protocol

from autoflow.core.logging import get_logger

logger = get_logger(__name__)

# {id, name, nodes: [{id, type, data: {config}}], edges: [...]}
WorkflowDefinition = Dict[str, Any]


class WorkflowRepository(Protocol):
    """Protocol for workflow definition lookups."""

    async def get_workflow_definition(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        ...


def node_config(node: Dict[str, Any]) -> Dict[str, Any]:
    """Stored config of a definition node (``data.config``), empty when absent."""
    return dict((node.get("data") or {}).get("config") or {})


def nodes_of_types(definition: WorkflowDefinition, node_types) -> List[Dict[str, Any]]:
    """Definition nodes whose type is in ``node_types``, in definition order."""
    return [node for node in definition.get("nodes") or [] if node.get("type") in node_types]


class InMemoryWorkflowRepository:
    """Dict-backed repository."""

    def __init__(self, workflows: Optional[Dict[str, WorkflowDefinition]] = None):
        self._workflows: Dict[str, WorkflowDefinition] = {}
        for workflow in (workflows or {}).values():
            self.save(workflow)

    def save(self, definition: WorkflowDefinition) -> None:
        if not definition.get("id"):
            raise ValueError("Workflow definition requires an id")
        self._workflows[definition["id"]] = copy.deepcopy(definition)
        logger.debug("Workflow definition saved", workflow_id=definition["id"],
                     nodes=len(definition.get("nodes") or []))

    def delete(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    async def get_workflow_definition(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        definition = self._workflows.get(workflow_id)
        return copy.deepcopy(definition) if definition is not None else None
