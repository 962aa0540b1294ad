"""Trigger processors - Manual, Webhook, Schedule, Database."""

from datetime import datetime
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from croniter import croniter
from pydantic import Field, field_validator

from autoflow.constants import DATABASE_TRIGGER_OPERATIONS, WEBHOOK_METHODS
from autoflow.core.logging import get_logger
from autoflow.services.execution.models import NodeExecutionResult, NodeJobData
from .base import BaseNodeConfig, BaseProcessor, check_allowed, timestamp

logger = get_logger(__name__)


# =============================================================================
# MANUAL TRIGGER
# =============================================================================

class ManualTriggerProcessor(BaseProcessor):
    """Always succeeds and echoes the run's trigger data."""

    node_type = "manual_trigger"
    label = "Manual trigger"

    async def run(self, job_data: NodeJobData, config: BaseNodeConfig) -> NodeExecutionResult:
        output = {
            "triggerType": "manual",
            "timestamp": timestamp(),
            "data": job_data.inputs.get("triggerData") or {},
        }
        return self.succeed(job_data, output, "Manual trigger executed")


# =============================================================================
# WEBHOOK TRIGGER
# =============================================================================

class WebhookTriggerConfig(BaseNodeConfig):
    method: str = "POST"
    authentication: str = "none"

    @field_validator("method")
    @classmethod
    def check_method(cls, v: str) -> str:
        return check_allowed(v, WEBHOOK_METHODS, "webhook method")


class WebhookTriggerProcessor(BaseProcessor):
    """Echoes the incoming request (method, headers, body, query)."""

    node_type = "webhook_trigger"
    config_model = WebhookTriggerConfig
    label = "Webhook trigger"

    async def run(self, job_data: NodeJobData, config: WebhookTriggerConfig) -> NodeExecutionResult:
        inputs = job_data.inputs
        output = {
            "triggerType": "webhook",
            "method": config.method,
            "authentication": config.authentication,
            "timestamp": timestamp(),
            "headers": inputs.get("headers") or {},
            "body": inputs.get("body") or {},
            "query": inputs.get("query") or {},
        }
        return self.succeed(
            job_data, output, f"Webhook trigger executed ({config.method})",
            data={"method": config.method, "authentication": config.authentication},
        )


# =============================================================================
# SCHEDULE TRIGGER
# =============================================================================

class ScheduleTriggerConfig(BaseNodeConfig):
    cron: str
    timezone: str = "America/Sao_Paulo"

    @field_validator("cron")
    @classmethod
    def check_cron_fields(cls, v: str) -> str:
        if len(v.split(" ")) != 5:
            raise ValueError("Cron expression must have exactly 5 fields")
        return v


def next_run_time(cron: str, tz_name: str, base: Optional[datetime] = None) -> datetime:
    """Next fire time of ``cron`` evaluated in ``tz_name``."""
    tz = ZoneInfo(tz_name)
    start = base.astimezone(tz) if base else datetime.now(tz)
    return croniter(cron, start).get_next(datetime)


class ScheduleTriggerProcessor(BaseProcessor):
    """Echoes the schedule and its next run time."""

    node_type = "schedule_trigger"
    config_model = ScheduleTriggerConfig
    label = "Schedule trigger"

    async def run(self, job_data: NodeJobData, config: ScheduleTriggerConfig) -> NodeExecutionResult:
        output = {
            "triggerType": "schedule",
            "cron": config.cron,
            "timezone": config.timezone,
            "timestamp": timestamp(),
            "nextExecution": next_run_time(config.cron, config.timezone).isoformat(),
        }
        return self.succeed(
            job_data, output, f"Schedule trigger executed ({config.cron})",
            data={"cron": config.cron, "timezone": config.timezone},
        )


# =============================================================================
# DATABASE TRIGGER
# =============================================================================

class DatabaseTriggerConfig(BaseNodeConfig):
    table: str = Field(min_length=1)
    operation: str = "insert"

    @field_validator("operation")
    @classmethod
    def check_operation(cls, v: str) -> str:
        return check_allowed(v, DATABASE_TRIGGER_OPERATIONS, "database operation")


class DatabaseTriggerProcessor(BaseProcessor):
    """Echoes the changed record for a table operation."""

    node_type = "database_trigger"
    config_model = DatabaseTriggerConfig
    label = "Database trigger"

    async def run(self, job_data: NodeJobData, config: DatabaseTriggerConfig) -> NodeExecutionResult:
        inputs = job_data.inputs
        output = {
            "triggerType": "database",
            "table": config.table,
            "operation": config.operation,
            "timestamp": timestamp(),
            "record": inputs.get("record") or {},
            "changes": inputs.get("changes") or {},
        }
        return self.succeed(
            job_data, output, f"Database trigger executed ({config.table}.{config.operation})",
            data={"table": config.table, "operation": config.operation},
        )

TRIGGER_PROCESSORS: Dict[str, type] = {
    ManualTriggerProcessor.node_type: ManualTriggerProcessor,
    WebhookTriggerProcessor.node_type: WebhookTriggerProcessor,
    ScheduleTriggerProcessor.node_type: ScheduleTriggerProcessor,
    DatabaseTriggerProcessor.node_type: DatabaseTriggerProcessor,
}
