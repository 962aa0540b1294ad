"""Base class for built-in node processors.

Each processor owns a Pydantic config model. ``validate`` is the model check
and ``process`` wraps ``run`` so that any exception becomes a failed
NodeExecutionResult carrying an error log entry.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from autoflow.core.logging import get_logger
from autoflow.services.execution.models import LogEntry, LogLevel, NodeExecutionResult, NodeJobData

logger = get_logger(__name__)


class BaseNodeConfig(BaseModel):
    """Base class for all node configs."""
    model_config = {"extra": "allow", "populate_by_name": True}


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_allowed(value: Any, allowed, label: str) -> Any:
    """Config validator helper: reject values outside an allow-list."""
    if value not in allowed:
        raise ValueError(f"Unsupported {label}: {value}")
    return value


def first_present(*values: Any) -> Any:
    """First value that is not None or empty, else None."""
    for value in values:
        if value is not None and value != "" and value != {} and value != []:
            return value
    return None


class BaseProcessor:
    """Template for a node processor.

    Subclasses set ``node_type``, ``config_model`` and ``label`` and implement
    ``run``.
    """

    node_type: str = ""
    config_model: Type[BaseNodeConfig] = BaseNodeConfig
    label: str = "Node"

    def validate(self, config: Dict[str, Any]) -> bool:
        """Check ``config`` against the processor's config model."""
        try:
            self.config_model.model_validate(config or {})
        except ValidationError as e:
            logger.debug("Node config rejected", node_type=self.node_type,
                         errors=[err["msg"] for err in e.errors()])
            return False
        return True

    async def process(self, job_data: NodeJobData) -> NodeExecutionResult:
        start_time = time.time()
        try:
            config = self.config_model.model_validate(job_data.config or {})
            result = await self.run(job_data, config)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("Node processor failed", node_type=self.node_type,
                         node_id=job_data.node_id, execution_id=job_data.execution_id,
                         error=message)
            result = NodeExecutionResult.failure(message)
            result.logs = [self.log(job_data, LogLevel.ERROR, f"{self.label} failed: {message}")]

        logger.debug("Node processor finished", node_type=self.node_type,
                     node_id=job_data.node_id, success=result.success,
                     execution_time=round(time.time() - start_time, 4))
        return result

    async def run(self, job_data: NodeJobData, config: BaseNodeConfig) -> NodeExecutionResult:
        raise NotImplementedError

    def log(self, job_data: NodeJobData, level: LogLevel, message: str,
            data: Optional[Dict[str, Any]] = None) -> LogEntry:
        """Log entry attributed to this node."""
        return LogEntry.create(job_data.execution_id, level, message,
                               node_id=job_data.node_id, data=data)

    def succeed(self, job_data: NodeJobData, output: Any, message: str,
                data: Optional[Dict[str, Any]] = None,
                level: LogLevel = LogLevel.INFO,
                next_nodes: Optional[List[str]] = None) -> NodeExecutionResult:
        """Successful result with a single log entry."""
        return NodeExecutionResult(
            success=True,
            data=output,
            logs=[self.log(job_data, level, message, data)],
            next_nodes=next_nodes,
        )
