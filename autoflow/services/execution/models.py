"""Execution engine data models.

All payload models are JSON-serializable dataclasses. Queue payloads use
camelCase keys and ``from_dict`` ignores unknown keys, so a job written by one
version of the engine can be processed by a newer one.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, Any, List, Optional, TYPE_CHECKING

from .jobs import Backoff, JobOptions

if TYPE_CHECKING:
    from autoflow.core.config import Settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    """Workflow execution states.

    State transitions:
        PENDING -> RUNNING -> COMPLETED
                           -> FAILED
        PENDING -> CANCELLED (job removed from the queue before dispatch)
        PAUSED is part of the vocabulary but no transition reaches it.
    """
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class JobPriority(IntEnum):
    """Queue priorities (1-10, 10 is dispatched first)."""
    LOW = 1
    NORMAL = 5
    HIGH = 8
    CRITICAL = 10


@dataclass
class LogEntry:
    """One execution log line."""
    id: str
    timestamp: str
    level: LogLevel
    message: str
    node_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def create(cls, execution_id: str, level: LogLevel, message: str,
               node_id: Optional[str] = None,
               data: Optional[Dict[str, Any]] = None) -> "LogEntry":
        """Create a log entry with a generated id and current timestamp."""
        return cls(
            id=f"{execution_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}",
            timestamp=utcnow().isoformat(),
            level=LogLevel(level),
            message=message,
            node_id=node_id,
            data=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
        }
        if self.node_id is not None:
            result["nodeId"] = self.node_id
        if self.data is not None:
            result["data"] = self.data
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            level=LogLevel(data.get("level", "info")),
            message=data.get("message", ""),
            node_id=data.get("nodeId"),
            data=data.get("data"),
        )


@dataclass
class RetryConfig:
    """Per-job retry override: number of attempts plus backoff policy."""
    attempts: int = 3
    backoff_type: str = "exponential"
    delay: int = 2000  # milliseconds

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("Retry attempts must be >= 1")
        if self.backoff_type not in ("fixed", "exponential"):
            raise ValueError(f"Unknown backoff type: {self.backoff_type}")
        if self.delay < 0:
            raise ValueError("Retry delay must be >= 0")

    def to_job_options(self, priority: int) -> JobOptions:
        return JobOptions(
            priority=priority,
            attempts=self.attempts,
            backoff=Backoff(type=self.backoff_type, delay=self.delay),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": {"type": self.backoff_type, "delay": self.delay},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  defaults: Optional["RetryConfig"] = None) -> "RetryConfig":
        """Create from dict, taking missing fields from ``defaults``."""
        defaults = defaults or cls()
        backoff = data.get("backoff") or {}
        return cls(
            attempts=data.get("attempts", defaults.attempts),
            backoff_type=backoff.get("type", defaults.backoff_type),
            delay=backoff.get("delay", defaults.delay),
        )


# =============================================================================
# QUEUE PAYLOADS
# =============================================================================

@dataclass(frozen=True)
class WorkflowExecutionInput:
    """Request to start a workflow run. Immutable once enqueued."""
    workflow_id: str
    trigger_data: Any = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.workflow_id:
            raise ValueError("workflow_id is required")


@dataclass
class WorkflowJobData:
    """Workflow queue payload: the execution input plus queue overrides."""
    workflow_id: str
    trigger_data: Any = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    retry_config: Optional[RetryConfig] = None
    priority: Optional[int] = None

    @classmethod
    def from_input(cls, execution_input: WorkflowExecutionInput,
                   retry_config: Optional[RetryConfig] = None,
                   priority: Optional[int] = None) -> "WorkflowJobData":
        return cls(
            workflow_id=execution_input.workflow_id,
            trigger_data=execution_input.trigger_data,
            user_id=execution_input.user_id,
            organization_id=execution_input.organization_id,
            context=dict(execution_input.context) if execution_input.context else None,
            retry_config=retry_config,
            priority=priority,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "triggerData": self.trigger_data,
            "userId": self.user_id,
            "organizationId": self.organization_id,
            "context": self.context,
            "retryConfig": self.retry_config.to_dict() if self.retry_config else None,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowJobData":
        retry = data.get("retryConfig")
        return cls(
            workflow_id=data["workflowId"],
            trigger_data=data.get("triggerData"),
            user_id=data.get("userId"),
            organization_id=data.get("organizationId"),
            context=data.get("context"),
            retry_config=RetryConfig.from_dict(retry) if retry else None,
            priority=data.get("priority"),
        )


@dataclass
class NodeJobData:
    """Node queue payload, one per node execution.

    ``context`` is a copy of the owning execution context taken at enqueue
    time; the live context is looked up by ``execution_id``.
    """
    execution_id: str
    node_id: str
    node_type: str
    config: Dict[str, Any] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    retry_config: Optional[RetryConfig] = None
    priority: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "nodeId": self.node_id,
            "nodeType": self.node_type,
            "config": self.config,
            "inputs": self.inputs,
            "context": self.context,
            "retryConfig": self.retry_config.to_dict() if self.retry_config else None,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeJobData":
        retry = data.get("retryConfig")
        return cls(
            execution_id=data["executionId"],
            node_id=data["nodeId"],
            node_type=data["nodeType"],
            config=data.get("config") or {},
            inputs=data.get("inputs") or {},
            context=data.get("context") or {},
            retry_config=RetryConfig.from_dict(retry) if retry else None,
            priority=data.get("priority"),
        )


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class NodeExecutionResult:
    """Outcome of a single processor run.

    ``next_nodes`` names the outgoing edge labels a branch would follow. The
    engine records it but does not use it for scheduling.
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    logs: Optional[List[LogEntry]] = None
    next_nodes: Optional[List[str]] = None

    @classmethod
    def ok(cls, data: Any = None, next_nodes: Optional[List[str]] = None) -> "NodeExecutionResult":
        return cls(success=True, data=data, next_nodes=next_nodes)

    @classmethod
    def failure(cls, error: str) -> "NodeExecutionResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        if self.logs:
            result["logs"] = [log.to_dict() for log in self.logs]
        if self.next_nodes is not None:
            result["nextNodes"] = self.next_nodes
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeExecutionResult":
        logs = data.get("logs")
        return cls(
            success=bool(data.get("success")),
            data=data.get("data"),
            error=data.get("error"),
            logs=[LogEntry.from_dict(log) for log in logs] if logs else None,
            next_nodes=data.get("nextNodes"),
        )


@dataclass
class WorkflowExecutionOutput:
    """Terminal record returned by the workflow job handler."""
    execution_id: str
    status: WorkflowStatus
    started_at: datetime
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None  # milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
        }


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

@dataclass
class QueueConfig:
    """Worker pool size and default job policy for one queue."""
    concurrency: int
    remove_on_complete: int
    remove_on_fail: int
    attempts: int
    backoff_type: str = "exponential"
    backoff_delay: int = 1000  # milliseconds

    def default_job_options(self) -> JobOptions:
        return JobOptions(
            attempts=self.attempts,
            backoff=Backoff(type=self.backoff_type, delay=self.backoff_delay),
            remove_on_complete=self.remove_on_complete,
            remove_on_fail=self.remove_on_fail,
        )


@dataclass
class ExecutionEngineConfig:
    """Everything the engine needs to build its queues and workers."""
    workflow: QueueConfig = field(default_factory=lambda: QueueConfig(
        concurrency=5, remove_on_complete=100, remove_on_fail=50,
        attempts=3, backoff_delay=2000,
    ))
    node: QueueConfig = field(default_factory=lambda: QueueConfig(
        concurrency=10, remove_on_complete=200, remove_on_fail=100,
        attempts=2, backoff_delay=1000,
    ))
    retry: RetryConfig = field(default_factory=lambda: RetryConfig(attempts=3, delay=2000))
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    key_prefix: str = "autoflow"
    monitoring_enabled: bool = False
    monitoring_port: int = 3001
    node_job_timeout: float = 300.0  # seconds
    log_persistence_enabled: bool = False
    log_retention_seconds: int = 86400

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ExecutionEngineConfig":
        return cls(
            workflow=QueueConfig(
                concurrency=settings.workflow_concurrency,
                remove_on_complete=settings.workflow_remove_on_complete,
                remove_on_fail=settings.workflow_remove_on_fail,
                attempts=settings.workflow_attempts,
                backoff_delay=settings.workflow_backoff_delay,
            ),
            node=QueueConfig(
                concurrency=settings.node_concurrency,
                remove_on_complete=settings.node_remove_on_complete,
                remove_on_fail=settings.node_remove_on_fail,
                attempts=settings.node_attempts,
                backoff_delay=settings.node_backoff_delay,
            ),
            retry=RetryConfig(attempts=settings.retry_max_attempts, delay=settings.retry_delay),
            redis_host=settings.redis_host,
            redis_port=settings.redis_port,
            redis_password=settings.redis_password,
            redis_db=settings.redis_db,
            key_prefix=settings.redis_key_prefix,
            monitoring_enabled=settings.monitoring_enabled,
            monitoring_port=settings.monitoring_port,
            node_job_timeout=settings.node_job_timeout,
            log_persistence_enabled=settings.log_persistence_enabled,
            log_retention_seconds=settings.log_retention_seconds,
        )
