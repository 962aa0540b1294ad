"""Utility processors - Delay, Data Transform, Clone, Code Execution, Logger."""

import asyncio
import copy
from collections import defaultdict
from typing import Any, Dict, List

from pydantic import Field, field_validator

from autoflow.constants import CODE_LANGUAGES
from autoflow.core.logging import get_logger
from autoflow.services.execution.expressions import (
    ExpressionError,
    evaluate_expression,
    get_nested_value,
)
from autoflow.services.execution.models import LogLevel, NodeExecutionResult, NodeJobData
from autoflow.services.gateways import generate_id
from .base import BaseNodeConfig, BaseProcessor, check_allowed, first_present, timestamp
from .conditions import expression_names

logger = get_logger(__name__)

UNIT_MS = {
    "milliseconds": 1,
    "seconds": 1000,
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
}


# =============================================================================
# DELAY
# =============================================================================

class DelayConfig(BaseNodeConfig):
    duration: float = Field(default=5000, ge=0)
    unit: str = "milliseconds"

    @field_validator("unit")
    @classmethod
    def check_unit(cls, v: str) -> str:
        return check_allowed(v, UNIT_MS, "delay unit")


class DelayProcessor(BaseProcessor):
    """Suspends this worker slot only; other jobs keep running."""

    node_type = "delay"
    config_model = DelayConfig
    label = "Delay"

    async def run(self, job_data: NodeJobData, config: DelayConfig) -> NodeExecutionResult:
        delay_ms = int(config.duration * UNIT_MS[config.unit])
        await asyncio.sleep(delay_ms / 1000)

        duration = int(config.duration) if float(config.duration).is_integer() else config.duration
        output = {
            "duration": duration,
            "unit": config.unit,
            "delayMs": delay_ms,
            "timestamp": timestamp(),
        }
        return self.succeed(
            job_data, output, f"Delay completed: {duration}{config.unit}",
            data={"duration": duration, "unit": config.unit, "delayMs": delay_ms},
        )


# =============================================================================
# DATA TRANSFORM
# =============================================================================

class DataTransformConfig(BaseNodeConfig):
    operation: str = "map"
    mapping: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("operation")
    @classmethod
    def check_operation(cls, v: str) -> str:
        return check_allowed(v, ("map", "filter", "reduce", "sort", "group"), "transform operation")


def map_data(data: Any, mapping: Dict[str, Any]) -> Any:
    """Build new objects: ``{new_key: dotted.source.path}``."""
    def map_object(item: Any) -> Dict[str, Any]:
        return {new_key: get_nested_value(item, path)
                for new_key, path in mapping.items() if isinstance(path, str)}

    if isinstance(data, list):
        return [map_object(item) for item in data]
    return map_object(data)


def filter_data(data: Any, mapping: Dict[str, Any]) -> Any:
    """Keep list items whose dotted paths equal the mapped values."""
    if not isinstance(data, list):
        return data
    return [
        item for item in data
        if all(get_nested_value(item, path) == expected for path, expected in mapping.items())
    ]


def reduce_data(data: Any, mapping: Dict[str, Any]) -> Any:
    """Fold a list, summing by default.

    mapping keys: ``initialValue`` (default 0), ``field`` (dotted path summed
    instead of the item), ``reducer`` (expression over ``acc`` and ``item``).
    """
    if not isinstance(data, list):
        return data

    accumulator = mapping.get("initialValue", 0)
    reducer = mapping.get("reducer")
    path = mapping.get("field")

    for item in data:
        value = get_nested_value(item, path) if path else item
        if reducer:
            accumulator = evaluate_expression(reducer, {"acc": accumulator, "item": value})
        else:
            accumulator = accumulator + value
    return accumulator


def sort_data(data: Any, mapping: Dict[str, Any]) -> Any:
    """Sort a list by ``sortKey`` (default "id"), ``order`` asc or desc."""
    if not isinstance(data, list):
        return data
    sort_key = mapping.get("sortKey", "id")
    reverse = mapping.get("order", "asc") == "desc"

    def key(item: Any):
        value = get_nested_value(item, sort_key)
        # Missing values sort last in ascending order
        return (value is None, value if value is not None else 0)

    return sorted(data, key=key, reverse=reverse)


def group_data(data: Any, mapping: Dict[str, Any]) -> Any:
    """Group list items by the value at ``groupBy``."""
    if not isinstance(data, list):
        return data
    group_by = mapping.get("groupBy", "id")
    groups: Dict[str, List[Any]] = defaultdict(list)
    for item in data:
        groups[str(get_nested_value(item, group_by))].append(item)
    return dict(groups)


TRANSFORMS = {
    "map": map_data,
    "filter": filter_data,
    "reduce": reduce_data,
    "sort": sort_data,
    "group": group_data,
}


class DataTransformProcessor(BaseProcessor):
    node_type = "data_transform_util"
    config_model = DataTransformConfig
    label = "Data transformation"

    async def run(self, job_data: NodeJobData, config: DataTransformConfig) -> NodeExecutionResult:
        inputs = job_data.inputs
        mapping = first_present(config.mapping, inputs.get("mapping")) or {}
        data = first_present(inputs.get("input"), inputs)

        try:
            transformed = TRANSFORMS[config.operation](copy.deepcopy(data), mapping)
        except ExpressionError as e:
            raise ValueError(f"Reducer failed: {e}") from e

        output = {
            "operation": config.operation,
            "originalData": data,
            "transformedData": transformed,
            "mapping": mapping,
            "timestamp": timestamp(),
        }
        return self.succeed(
            job_data, output, f"Data transformation completed: {config.operation}",
            data={"operation": config.operation, "mapping": mapping},
        )


# =============================================================================
# CLONE
# =============================================================================

class CloneConfig(BaseNodeConfig):
    copies: int = Field(default=1, ge=1, le=10)


class CloneProcessor(BaseProcessor):
    """Replicates the input, tagging each copy with cloneIndex and clonedAt."""

    node_type = "clone"
    config_model = CloneConfig
    label = "Clone"

    async def run(self, job_data: NodeJobData, config: CloneConfig) -> NodeExecutionResult:
        data = first_present(job_data.inputs.get("input"), job_data.inputs)
        base = data if isinstance(data, dict) else {"value": data}
        cloned = [
            {**copy.deepcopy(base), "cloneIndex": index + 1, "clonedAt": timestamp()}
            for index in range(config.copies)
        ]
        output = {
            "copies": config.copies,
            "originalData": data,
            "clonedData": cloned,
            "timestamp": timestamp(),
        }
        return self.succeed(job_data, output, f"Data cloned {config.copies} times",
                            data={"copies": config.copies})


# =============================================================================
# CODE EXECUTION
# =============================================================================

class CodeExecutionConfig(BaseNodeConfig):
    code: str = Field(min_length=1)
    language: str = "javascript"

    @field_validator("language")
    @classmethod
    def check_language(cls, v: str) -> str:
        return check_allowed(v, CODE_LANGUAGES, "language")


class CodeExecutionProcessor(BaseProcessor):
    """Evaluates a single sandboxed expression against the input bag."""

    node_type = "code_execution"
    config_model = CodeExecutionConfig
    label = "Code execution"

    async def run(self, job_data: NodeJobData, config: CodeExecutionConfig) -> NodeExecutionResult:
        try:
            result = evaluate_expression(config.code, expression_names(job_data.inputs))
        except ExpressionError as e:
            raise ValueError(f"Code execution error: {e}") from e

        output = {
            "language": config.language,
            "code": config.code,
            "result": result,
            "timestamp": timestamp(),
        }
        return self.succeed(
            job_data, output, f"Code executed successfully ({config.language})",
            data={"language": config.language, "codeLength": len(config.code)},
        )


# =============================================================================
# LOGGER
# =============================================================================

class LoggerConfig(BaseNodeConfig):
    level: LogLevel = LogLevel.INFO
    message: str = "Log message"


class LoggerProcessor(BaseProcessor):
    """Appends a leveled entry to the execution log."""

    node_type = "logger"
    config_model = LoggerConfig
    label = "Logger"

    async def run(self, job_data: NodeJobData, config: LoggerConfig) -> NodeExecutionResult:
        inputs = job_data.inputs
        message = first_present(inputs.get("message"), config.message)
        log_id = generate_id("log")

        output = {
            "logId": log_id,
            "level": config.level.value,
            "message": message,
            "data": first_present(inputs.get("input"), inputs),
            "timestamp": timestamp(),
        }
        std_level = "warning" if config.level == LogLevel.WARN else config.level.value
        getattr(logger, std_level)("Workflow logger node", node_id=job_data.node_id,
                                   execution_id=job_data.execution_id, message=message)
        return self.succeed(
            job_data, output, f"Logger: {message}",
            data={"level": config.level.value, "message": message, "logId": log_id},
            level=config.level,
        )


UTILITY_PROCESSORS: Dict[str, type] = {
    DelayProcessor.node_type: DelayProcessor,
    DataTransformProcessor.node_type: DataTransformProcessor,
    CloneProcessor.node_type: CloneProcessor,
    CodeExecutionProcessor.node_type: CodeExecutionProcessor,
    LoggerProcessor.node_type: LoggerProcessor,
}
