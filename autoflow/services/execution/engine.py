"""Queue-backed workflow execution engine.

Implements:
- Two-tier dispatch: one workflow job fans out into one node job per node
- Independent retry budgets per queue (a failing node never consumes the
  workflow job's attempts)
- Execution context isolation per run, shared safely by concurrent node jobs
- Lifecycle events through an in-process EventBus
- Optional durable execution logs (Null Object sink when disabled)

A workflow run completes even when some of its nodes fail; the node failures
are visible in the per-node results and in the execution logs.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple, Union

from autoflow.constants import (
    ACTION_TYPES,
    JOB_REMOVE_ON_COMPLETE,
    JOB_REMOVE_ON_FAIL,
    NODE_COMPLETED,
    NODE_FAILED,
    NODE_STARTED,
    TRIGGER_TYPES,
    WORKFLOW_COMPLETED,
    WORKFLOW_FAILED,
    WORKFLOW_JOB_NAME,
    WORKFLOW_STARTED,
)
from autoflow.core.logging import get_logger
from .context import ExecutionContext, ExecutionContextStore
from .events import EventBus
from .exceptions import (
    ExecutionTimeout,
    InvalidNodeConfig,
    JobFailed,
    NoTriggerNodes,
    UnknownNodeType,
    WorkflowNotFound,
)
from .jobs import Job, JobOptions, JobState
from .logs import LogSinkProtocol, NullLogSink
from .models import (
    ExecutionEngineConfig,
    JobPriority,
    LogEntry,
    LogLevel,
    NodeExecutionResult,
    NodeJobData,
    RetryConfig,
    WorkflowExecutionInput,
    WorkflowExecutionOutput,
    WorkflowJobData,
    WorkflowStatus,
    utcnow,
)
from .queue import JobQueue
from .registry import (
    NodeProcessor,
    NodeProcessorRegistry,
    TriggerRegistry,
    WorkflowTrigger,
    validate_config,
)
from .repository import WorkflowRepository, node_config, nodes_of_types
from .worker import QueueWorker

logger = get_logger(__name__)

# Queue job state -> public execution status
STATUS_BY_STATE = {
    JobState.WAITING: WorkflowStatus.PENDING,
    JobState.DELAYED: WorkflowStatus.PENDING,
    JobState.PAUSED: WorkflowStatus.PENDING,
    JobState.ACTIVE: WorkflowStatus.RUNNING,
    JobState.COMPLETED: WorkflowStatus.COMPLETED,
    JobState.FAILED: WorkflowStatus.FAILED,
}

# Failures that will not go away by running the node again
NON_RETRYABLE_NODE_ERRORS = (UnknownNodeType, InvalidNodeConfig)


def _result_record(result: NodeExecutionResult) -> Dict[str, Any]:
    """Per-node result stored in the execution context (logs are kept separately)."""
    record = result.to_dict()
    record.pop("logs", None)
    return record


class ExecutionEngine:
    """Runs workflows through a workflow queue and a node queue.

    Features:
    - execute/status/cancel/logs operations keyed by execution id (= workflow job id)
    - Pluggable node processors and workflow triggers
    - Bounded worker pools per queue
    """

    def __init__(self, config: ExecutionEngineConfig,
                 workflow_queue: JobQueue,
                 node_queue: JobQueue,
                 repository: WorkflowRepository,
                 registry: Optional[NodeProcessorRegistry] = None,
                 triggers: Optional[TriggerRegistry] = None,
                 events: Optional[EventBus] = None,
                 log_sink: Optional[LogSinkProtocol] = None,
                 contexts: Optional[ExecutionContextStore] = None):
        """Initialize engine.

        Args:
            config: Queue, retry and timeout settings
            workflow_queue: Queue carrying one job per workflow run
            node_queue: Queue carrying one job per node execution
            repository: Source of workflow definitions
            registry: Node processors by node type
            triggers: Workflow triggers by trigger type
            events: Bus receiving workflow:* and node:* lifecycle events
            log_sink: Durable execution log store (NullLogSink when omitted)
            contexts: Table of in-flight execution contexts
        """
        self.config = config
        self.workflow_queue = workflow_queue
        self.node_queue = node_queue
        self.repository = repository
        self.registry = registry or NodeProcessorRegistry()
        self.triggers = triggers or TriggerRegistry()
        self.events = events or EventBus()
        self.log_sink = log_sink or NullLogSink()
        self.contexts = contexts or ExecutionContextStore()

        self.workflow_worker = QueueWorker(
            workflow_queue, self._run_workflow_job, concurrency=config.workflow.concurrency,
        )
        self.node_worker = QueueWorker(
            node_queue, self._run_node_job, concurrency=config.node.concurrency,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self.workflow_worker.is_running and self.node_worker.is_running

    async def start(self) -> None:
        """Start the node workers, then the workflow workers."""
        await self.node_worker.start()
        await self.workflow_worker.start()
        logger.info("Execution engine started",
                    workflow_concurrency=self.config.workflow.concurrency,
                    node_concurrency=self.config.node.concurrency)

    async def stop(self) -> None:
        """Stop workers, then close queues, then close queue event channels."""
        try:
            await self.workflow_worker.stop()
            await self.node_worker.stop()
        finally:
            try:
                await self.workflow_queue.close()
                await self.node_queue.close()
            finally:
                await self.workflow_queue.events.close()
                await self.node_queue.events.close()
        logger.info("Execution engine stopped")

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================

    async def execute_workflow(self, execution_input: WorkflowExecutionInput,
                               retry_config: Optional[Union[RetryConfig, Dict[str, Any]]] = None,
                               priority: Optional[int] = None) -> str:
        """Enqueue a workflow run.

        Args:
            execution_input: Workflow id, trigger data and caller context
            retry_config: Per-run retry override; dict fields missing from it
                are filled from the engine's global retry defaults
            priority: Queue priority 1-10 (default JobPriority.NORMAL)

        Returns:
            Execution id (the workflow job id)
        """
        if isinstance(retry_config, dict):
            retry_config = RetryConfig.from_dict(retry_config, defaults=self.config.retry)

        job_data = WorkflowJobData.from_input(execution_input, retry_config, priority)
        job = await self.workflow_queue.add(
            WORKFLOW_JOB_NAME, job_data.to_dict(), self._job_options(retry_config, priority),
        )
        logger.info("Workflow execution queued", execution_id=job.id,
                    workflow_id=execution_input.workflow_id, priority=job.opts.priority)
        return job.id

    async def get_execution_status(self, execution_id: str) -> Optional[WorkflowStatus]:
        """Current status of a run, or None when its job no longer exists."""
        job = await self.workflow_queue.get_job(execution_id)
        if job is None:
            return None
        return STATUS_BY_STATE.get(job.state, WorkflowStatus.PENDING)

    async def get_execution_output(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """Output record of a completed run, or None."""
        job = await self.workflow_queue.get_job(execution_id)
        if job is None or job.state != JobState.COMPLETED:
            return None
        return job.return_value

    async def cancel_execution(self, execution_id: str) -> bool:
        """Remove a run that has not started. Active or unknown runs return False."""
        removed = await self.workflow_queue.remove(execution_id)
        if removed:
            logger.info("Workflow execution cancelled", execution_id=execution_id)
        else:
            logger.debug("Workflow execution not cancellable", execution_id=execution_id)
        return removed

    async def get_execution_logs(self, execution_id: str) -> List[LogEntry]:
        """Logs of a run: live context first, then the durable sink, else empty."""
        ctx = self.contexts.get(execution_id)
        if ctx is not None:
            return await ctx.get_logs()
        if self.log_sink.enabled:
            return await self.log_sink.read(execution_id)
        return []

    async def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        return {
            "workflow": await self.workflow_queue.get_job_counts(),
            "node": await self.node_queue.get_job_counts(),
        }

    async def clear_queues(self) -> None:
        """Drop every job from both queues, whatever its state."""
        logger.warning("Clearing all queues")
        await self.workflow_queue.remove_all()
        await self.node_queue.remove_all()

    async def pause_queues(self) -> None:
        await self.workflow_queue.pause()
        await self.node_queue.pause()
        logger.info("Queues paused")

    async def resume_queues(self) -> None:
        await self.workflow_queue.resume()
        await self.node_queue.resume()
        logger.info("Queues resumed")

    async def clean_queues(self, grace_ms: int) -> Dict[str, int]:
        """Remove completed and failed jobs older than ``grace_ms``."""
        removed: Dict[str, int] = {}
        for label, queue in (("workflow", self.workflow_queue), ("node", self.node_queue)):
            count = 0
            for state in (JobState.COMPLETED, JobState.FAILED):
                count += await queue.clean(grace_ms, state)
            removed[label] = count
        logger.info("Queues cleaned", grace_ms=grace_ms, **removed)
        return removed

    def register_node_processor(self, processor: NodeProcessor) -> None:
        self.registry.register(processor)

    def register_trigger(self, trigger: WorkflowTrigger) -> None:
        self.triggers.register(trigger)

    async def fire_trigger(self, trigger_type: str, data: Any) -> str:
        """Turn an external event into a run through a registered trigger.

        Raises:
            ValueError: No trigger is registered for ``trigger_type`` or it rejected ``data``
        """
        trigger = self.triggers.resolve(trigger_type)
        if trigger is None:
            raise ValueError(f"No trigger registered for type: {trigger_type}")

        validate = getattr(trigger, "validate", None)
        if validate is not None and not validate(data):
            raise ValueError(f"Invalid payload for trigger type: {trigger_type}")

        execution_input = await trigger.execute(data)
        logger.info("Trigger fired", trigger_type=trigger_type,
                    workflow_id=execution_input.workflow_id)
        return await self.execute_workflow(execution_input)

    # =========================================================================
    # WORKFLOW JOB HANDLER
    # =========================================================================

    async def process_workflow(self, execution_id: str,
                               job_data: WorkflowJobData) -> WorkflowExecutionOutput:
        """Run one workflow job and return its output record (never raises)."""
        output, _ = await self._execute_workflow(execution_id, job_data)
        return output

    async def _run_workflow_job(self, job: Job) -> Dict[str, Any]:
        output, error = await self._execute_workflow(job.id, WorkflowJobData.from_dict(job.data))
        if error is not None:
            raise JobFailed(job.id, output.error or str(error),
                            retryable=getattr(error, "retryable", True))
        return output.to_dict()

    async def _execute_workflow(
        self, execution_id: str, job_data: WorkflowJobData,
    ) -> Tuple[WorkflowExecutionOutput, Optional[Exception]]:
        start_time = time.time()
        ctx = ExecutionContext.from_job(execution_id, job_data)
        self.contexts.register(ctx)

        try:
            await self.events.emit(WORKFLOW_STARTED, {
                "executionId": execution_id,
                "workflowId": job_data.workflow_id,
            })
            await self._log(execution_id, LogLevel.INFO,
                            f"Workflow execution started: {job_data.workflow_id}")

            definition = await self.repository.get_workflow_definition(job_data.workflow_id)
            if definition is None:
                raise WorkflowNotFound(job_data.workflow_id)

            trigger_nodes = nodes_of_types(definition, TRIGGER_TYPES)
            if not trigger_nodes:
                raise NoTriggerNodes()
            action_nodes = nodes_of_types(definition, ACTION_TYPES)

            # Triggers first so they are ahead of actions at equal priority
            node_jobs: Dict[str, str] = {}
            for node in trigger_nodes + action_nodes:
                node_jobs[node["id"]] = await self._enqueue_node(ctx, node, job_data)

            await self._await_node_jobs(ctx, node_jobs)

            duration = int((time.time() - start_time) * 1000)
            results = await ctx.results_snapshot()
            await self._log(execution_id, LogLevel.INFO,
                            f"Workflow execution completed in {duration}ms")
            await self.events.emit(WORKFLOW_COMPLETED, {
                "executionId": execution_id,
                "result": results,
            })
            logger.info("Workflow execution completed", execution_id=execution_id,
                        workflow_id=job_data.workflow_id, nodes=len(node_jobs),
                        duration_ms=duration)

            return WorkflowExecutionOutput(
                execution_id=execution_id,
                status=WorkflowStatus.COMPLETED,
                started_at=ctx.start_time,
                result=results,
                completed_at=utcnow(),
                duration=duration,
            ), None

        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("Workflow execution failed", execution_id=execution_id,
                         workflow_id=job_data.workflow_id, error=message,
                         retryable=getattr(e, "retryable", True))
            await self._log(execution_id, LogLevel.ERROR,
                            f"Workflow execution failed: {message}")
            await self.events.emit(WORKFLOW_FAILED, {
                "executionId": execution_id,
                "error": message,
            })
            return WorkflowExecutionOutput(
                execution_id=execution_id,
                status=WorkflowStatus.FAILED,
                started_at=ctx.start_time,
                error=message,
                completed_at=utcnow(),
                duration=int((time.time() - start_time) * 1000),
            ), e

        finally:
            self.contexts.remove(execution_id)

    async def _enqueue_node(self, ctx: ExecutionContext, node: Dict[str, Any],
                            job_data: WorkflowJobData) -> str:
        node_id = node["id"]
        node_type = node["type"]
        data = node.get("data") or {}

        retry = data.get("retryConfig")
        retry_config = RetryConfig.from_dict(retry, defaults=self.config.retry) if retry else None

        node_data = NodeJobData(
            execution_id=ctx.execution_id,
            node_id=node_id,
            node_type=node_type,
            config=node_config(node),
            inputs=await ctx.node_inputs(node_type),
            context=await ctx.snapshot(),
            retry_config=retry_config,
            priority=job_data.priority,
        )
        job = await self.node_queue.add(
            f"node-{node_id}", node_data.to_dict(),
            self._job_options(retry_config, job_data.priority),
        )
        logger.debug("Node job queued", execution_id=ctx.execution_id,
                     node_id=node_id, node_type=node_type, job_id=job.id)
        return job.id

    async def _await_node_jobs(self, ctx: ExecutionContext, node_jobs: Dict[str, str]) -> None:
        """Wait for every node job and merge results the live context has not seen.

        Node jobs run by other processes report only through their job record.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.node_job_timeout
        pending = len(node_jobs)

        for node_id, job_id in node_jobs.items():
            remaining = max(deadline - loop.time(), 0.0)
            try:
                job = await self.node_queue.wait_until_finished(job_id, remaining)
            except asyncio.TimeoutError:
                raise ExecutionTimeout(ctx.execution_id, self.config.node_job_timeout, pending)
            pending -= 1

            if job is None:
                continue
            if job.state == JobState.COMPLETED and isinstance(job.return_value, dict):
                record = dict(job.return_value)
                record.pop("logs", None)
                await ctx.set_default_node_result(node_id, record)
            elif job.state == JobState.FAILED:
                await ctx.set_default_node_result(
                    node_id, {"success": False, "error": job.failed_reason},
                )

    # =========================================================================
    # NODE JOB HANDLER
    # =========================================================================

    async def process_node(self, job_data: NodeJobData) -> NodeExecutionResult:
        """Run one node job through its processor (never raises)."""
        result, _ = await self._execute_node(job_data)
        return result

    async def _run_node_job(self, job: Job) -> Dict[str, Any]:
        result, retryable = await self._execute_node(NodeJobData.from_dict(job.data))
        if not result.success:
            raise JobFailed(job.id, result.error or "Node execution failed", retryable=retryable)
        return result.to_dict()

    async def _execute_node(self, job_data: NodeJobData) -> Tuple[NodeExecutionResult, bool]:
        execution_id = job_data.execution_id
        node_id = job_data.node_id
        node_type = job_data.node_type

        await self.events.emit(NODE_STARTED, {
            "executionId": execution_id,
            "nodeId": node_id,
            "nodeType": node_type,
        })
        await self._log(execution_id, LogLevel.INFO,
                        f"Node {node_id} ({node_type}) execution started", node_id=node_id)

        retryable = True
        try:
            processor = self.registry.resolve(node_type)
            if processor is None:
                raise UnknownNodeType(node_type)
            if not validate_config(processor, job_data.config):
                raise InvalidNodeConfig(node_type)
            result = await processor.process(job_data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retryable = not isinstance(e, NON_RETRYABLE_NODE_ERRORS) and getattr(e, "retryable", True)
            result = NodeExecutionResult.failure(str(e) or type(e).__name__)

        ctx = self.contexts.get(execution_id)
        if result.logs:
            if ctx is not None:
                await ctx.append_logs(result.logs)
            for entry in result.logs:
                await self.log_sink.append(execution_id, entry)
        if ctx is not None:
            await ctx.set_node_result(node_id, _result_record(result))

        if result.success:
            await self._log(execution_id, LogLevel.INFO,
                            f"Node {node_id} completed successfully", node_id=node_id)
            await self.events.emit(NODE_COMPLETED, {
                "executionId": execution_id,
                "nodeId": node_id,
                "result": result.data,
            })
        else:
            logger.warning("Node execution failed", execution_id=execution_id,
                           node_id=node_id, node_type=node_type, error=result.error,
                           retryable=retryable)
            await self._log(execution_id, LogLevel.ERROR,
                            f"Node {node_id} failed: {result.error}", node_id=node_id)
            await self.events.emit(NODE_FAILED, {
                "executionId": execution_id,
                "nodeId": node_id,
                "error": result.error,
            })
        return result, retryable

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _job_options(self, retry_config: Optional[RetryConfig],
                     priority: Optional[int]) -> JobOptions:
        """Per-job options; anything unset falls back to the queue defaults."""
        priority = priority if priority is not None else JobPriority.NORMAL
        if retry_config is not None:
            options = retry_config.to_job_options(int(priority))
        else:
            options = JobOptions(priority=int(priority))
        options.remove_on_complete = JOB_REMOVE_ON_COMPLETE
        options.remove_on_fail = JOB_REMOVE_ON_FAIL
        return options

    async def _log(self, execution_id: str, level: LogLevel, message: str,
                   node_id: Optional[str] = None,
                   data: Optional[Dict[str, Any]] = None) -> LogEntry:
        """Append an entry to the live context (if any) and the durable sink."""
        entry = LogEntry.create(execution_id, level, message, node_id=node_id, data=data)
        ctx = self.contexts.get(execution_id)
        if ctx is not None:
            await ctx.append_logs([entry])
        await self.log_sink.append(execution_id, entry)
        return entry

