"""Workflow execution package.

Queue-backed execution with:
- A workflow queue and a node queue with independent retry budgets
- Redis (shared) or in-memory (process-local) queue backends
- Per-run execution contexts safe for concurrent node jobs
- Pluggable node processors and workflow triggers
"""

from .models import (
    WorkflowStatus,
    LogLevel,
    JobPriority,
    LogEntry,
    RetryConfig,
    WorkflowExecutionInput,
    WorkflowJobData,
    NodeJobData,
    NodeExecutionResult,
    WorkflowExecutionOutput,
    QueueConfig,
    ExecutionEngineConfig,
)
from .jobs import Job, JobOptions, JobState, Backoff
from .exceptions import (
    ExecutionError,
    WorkflowNotFound,
    NoTriggerNodes,
    UnknownNodeType,
    InvalidNodeConfig,
    ProcessorRuntimeError,
    QueueUnavailable,
    JobFailed,
    ExecutionTimeout,
)
from .queue import JobQueue, MemoryJobQueue, RedisJobQueue, create_job_queue
from .worker import QueueWorker
from .events import EventBus, QueueEvents
from .context import ExecutionContext, ExecutionContextStore
from .logs import LogSinkProtocol, NullLogSink, RedisLogSink, create_log_sink
from .registry import NodeProcessor, WorkflowTrigger, NodeProcessorRegistry, TriggerRegistry
from .repository import WorkflowRepository, InMemoryWorkflowRepository
from .engine import ExecutionEngine

__all__ = [
    # Models
    "WorkflowStatus",
    "LogLevel",
    "JobPriority",
    "LogEntry",
    "RetryConfig",
    "WorkflowExecutionInput",
    "WorkflowJobData",
    "NodeJobData",
    "NodeExecutionResult",
    "WorkflowExecutionOutput",
    "QueueConfig",
    "ExecutionEngineConfig",
    # Jobs
    "Job",
    "JobOptions",
    "JobState",
    "Backoff",
    # Errors
    "ExecutionError",
    "WorkflowNotFound",
    "NoTriggerNodes",
    "UnknownNodeType",
    "InvalidNodeConfig",
    "ProcessorRuntimeError",
    "QueueUnavailable",
    "JobFailed",
    "ExecutionTimeout",
    # Queues and workers
    "JobQueue",
    "MemoryJobQueue",
    "RedisJobQueue",
    "create_job_queue",
    "QueueWorker",
    # Events
    "EventBus",
    "QueueEvents",
    # Context
    "ExecutionContext",
    "ExecutionContextStore",
    # Logs
    "LogSinkProtocol",
    "NullLogSink",
    "RedisLogSink",
    "create_log_sink",
    # Registries
    "NodeProcessor",
    "WorkflowTrigger",
    "NodeProcessorRegistry",
    "TriggerRegistry",
    # Repository
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    # Engine
    "ExecutionEngine",
]
