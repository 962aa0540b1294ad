"""In-flight execution state shared by a run's node jobs.

Each ExecutionContext owns an asyncio.Lock; every mutation of its results,
variables or logs goes through it so concurrent node handlers append safely.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from autoflow.constants import TRIGGER_DATA_TYPES
from autoflow.core.logging import get_logger
from .models import LogEntry, WorkflowJobData, utcnow

logger = get_logger(__name__)


@dataclass
class ExecutionContext:
    """Mutable state of one workflow run."""
    execution_id: str
    workflow_id: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    trigger_data: Any = None
    node_results: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    logs: List[LogEntry] = field(default_factory=list)
    start_time: datetime = field(default_factory=utcnow)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @classmethod
    def from_job(cls, execution_id: str, job_data: WorkflowJobData) -> "ExecutionContext":
        """Build the context for a workflow job, seeding variables from the request context."""
        return cls(
            execution_id=execution_id,
            workflow_id=job_data.workflow_id,
            user_id=job_data.user_id,
            organization_id=job_data.organization_id,
            trigger_data=job_data.trigger_data,
            variables=dict(job_data.context or {}),
        )

    async def append_logs(self, entries: List[LogEntry]) -> None:
        async with self._lock:
            self.logs.extend(entries)

    async def set_node_result(self, node_id: str, result: Any) -> None:
        async with self._lock:
            self.node_results[node_id] = result

    async def set_default_node_result(self, node_id: str, result: Any) -> None:
        """Record ``result`` unless the node already reported one."""
        async with self._lock:
            self.node_results.setdefault(node_id, result)

    async def set_variable(self, name: str, value: Any) -> None:
        async with self._lock:
            self.variables[name] = value

    async def get_logs(self) -> List[LogEntry]:
        async with self._lock:
            return list(self.logs)

    async def results_snapshot(self) -> Dict[str, Any]:
        async with self._lock:
            return copy.deepcopy(self.node_results)

    async def node_inputs(self, node_type: str) -> Dict[str, Any]:
        """Inputs for a node: trigger data (trigger nodes only), node results, then variables."""
        async with self._lock:
            inputs: Dict[str, Any] = {}
            if node_type in TRIGGER_DATA_TYPES:
                inputs["triggerData"] = copy.deepcopy(self.trigger_data)
            inputs.update(copy.deepcopy(self.node_results))
            inputs.update(copy.deepcopy(self.variables))
            return inputs

    async def snapshot(self) -> Dict[str, Any]:
        """Copy embedded in node job payloads (logs excluded)."""
        async with self._lock:
            return {
                "executionId": self.execution_id,
                "workflowId": self.workflow_id,
                "userId": self.user_id,
                "organizationId": self.organization_id,
                "triggerData": copy.deepcopy(self.trigger_data),
                "variables": copy.deepcopy(self.variables),
                "startTime": self.start_time.isoformat(),
            }


class ExecutionContextStore:
    """Process-local table of in-flight execution contexts keyed by execution id."""

    def __init__(self):
        self._contexts: Dict[str, ExecutionContext] = {}

    def register(self, ctx: ExecutionContext) -> None:
        if ctx.execution_id in self._contexts:
            logger.warning("Replacing execution context", execution_id=ctx.execution_id)
        self._contexts[ctx.execution_id] = ctx

    def get(self, execution_id: str) -> Optional[ExecutionContext]:
        return self._contexts.get(execution_id)

    def remove(self, execution_id: str) -> Optional[ExecutionContext]:
        return self._contexts.pop(execution_id, None)

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._contexts

    def __len__(self) -> int:
        return len(self._contexts)
