"""Execution engine exception hierarchy.

``retryable`` tells the queue worker whether a failed job may consume another
attempt or must be marked failed immediately.
"""


class ExecutionError(Exception):
    """Base exception for all execution-related errors."""

    retryable: bool = True


class WorkflowNotFound(ExecutionError):
    """The workflow repository has no definition for the requested id."""

    retryable = False

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class NoTriggerNodes(ExecutionError):
    """The workflow definition contains no trigger-classified nodes."""

    retryable = False

    def __init__(self):
        super().__init__("No trigger nodes found in workflow")


class UnknownNodeType(ExecutionError):
    """No processor is registered for a node type."""

    retryable = False

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No processor found for node type: {node_type}")


class InvalidNodeConfig(ExecutionError):
    """A processor rejected the node configuration."""

    retryable = False

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Invalid configuration for node type: {node_type}")


class ProcessorRuntimeError(ExecutionError):
    """A processor failed while running."""

    def __init__(self, node_type: str, message: str):
        self.node_type = node_type
        super().__init__(message)


class QueueUnavailable(ExecutionError):
    """The queue backend could not be reached."""

    def __init__(self, backend: str, message: str):
        self.backend = backend
        super().__init__(f"[{backend}] {message}")


class JobFailed(ExecutionError):
    """A job reached a terminal failed state."""

    def __init__(self, job_id: str, reason: str, retryable: bool = True):
        self.job_id = job_id
        self.reason = reason
        self.retryable = retryable
        super().__init__(reason)


class ExecutionTimeout(ExecutionError):
    """Node jobs of a run did not finish in time."""

    retryable = False

    def __init__(self, execution_id: str, timeout: float, pending: int):
        self.execution_id = execution_id
        super().__init__(f"Timed out after {timeout}s waiting for {pending} node job(s)")
