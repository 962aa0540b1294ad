"""Condition processors - If, Validation, Error Handler, Retry.

Condition processors always succeed when they can evaluate; the branch they
chose is reported through ``next_nodes``.
"""

import re
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from autoflow.core.logging import get_logger
from autoflow.services.execution.expressions import (
    ExpressionError,
    evaluate_condition,
    get_nested_value,
)
from autoflow.services.execution.models import LogLevel, NodeExecutionResult, NodeJobData
from .base import BaseNodeConfig, BaseProcessor, check_allowed, timestamp

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def expression_names(inputs: Dict[str, Any]) -> Dict[str, Any]:
    """Names visible to node expressions: ``input`` plus every input key."""
    return {**inputs, "input": inputs}


def safe_condition(expression: str, inputs: Dict[str, Any], node_id: str) -> bool:
    """Evaluate a condition; evaluation errors count as false."""
    try:
        return evaluate_condition(expression, expression_names(inputs))
    except ExpressionError as e:
        logger.warning("Condition evaluation error", node_id=node_id,
                       condition=expression, error=str(e))
        return False


# =============================================================================
# CONDITION IF
# =============================================================================

class ConditionIfConfig(BaseNodeConfig):
    condition: str = Field(min_length=1)
    operator: str = "javascript"
    value: Any = None

    @field_validator("operator")
    @classmethod
    def check_operator(cls, v: str) -> str:
        return check_allowed(v, ("javascript", "equals", "greater", "less", "contains"), "operator")


def compare(operator: str, left: Any, right: Any) -> bool:
    """Field comparison used by the non-expression operators."""
    if operator == "equals":
        return left == right
    if left is None or right is None:
        return False
    try:
        if operator == "greater":
            return left > right
        if operator == "less":
            return left < right
        if operator == "contains":
            return right in left
    except TypeError:
        return False
    return False


class ConditionIfProcessor(BaseProcessor):
    """Evaluates a boolean condition and branches true/false."""

    node_type = "condition_if"
    config_model = ConditionIfConfig
    label = "Condition evaluation"

    async def run(self, job_data: NodeJobData, config: ConditionIfConfig) -> NodeExecutionResult:
        inputs = job_data.inputs
        if config.operator == "javascript":
            result = safe_condition(config.condition, inputs, job_data.node_id)
        else:
            left = get_nested_value(expression_names(inputs), config.condition)
            result = compare(config.operator, left, config.value)

        output = {
            "condition": config.condition,
            "result": result,
            "timestamp": timestamp(),
            "inputs": inputs,
        }
        return self.succeed(
            job_data, output, f"Condition evaluated: {config.condition} = {result}",
            data={"condition": config.condition, "result": result},
            next_nodes=["true"] if result else ["false"],
        )


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationRule(BaseNodeConfig):
    type: str
    field: str
    value: Any = None


class ValidationConfig(BaseNodeConfig):
    rules: List[ValidationRule]


def validate_data(data: Dict[str, Any], rules: List[ValidationRule]) -> List[str]:
    """Apply rules in order and collect one message per violation."""
    errors: List[str] = []
    for rule in rules:
        value = get_nested_value(data, rule.field)

        if rule.type == "required" and not value:
            errors.append(f"Field {rule.field} is required")

        if rule.type == "email" and value and not EMAIL_RE.match(str(value)):
            errors.append(f"Field {rule.field} must be a valid email")

        # Values without a length (numbers, booleans) never violate minLength
        if (rule.type == "minLength" and value and rule.value is not None
                and hasattr(value, "__len__") and len(value) < int(rule.value)):
            errors.append(f"Field {rule.field} must be at least {rule.value} characters")

    return errors


class ValidationProcessor(BaseProcessor):
    """Applies declarative rules; branches valid/invalid."""

    node_type = "validation"
    config_model = ValidationConfig
    label = "Validation"

    async def run(self, job_data: NodeJobData, config: ValidationConfig) -> NodeExecutionResult:
        data = job_data.inputs.get("input") or job_data.inputs
        errors = validate_data(data, config.rules)
        valid = not errors

        output = {
            "valid": valid,
            "errors": errors,
            "data": data,
            "timestamp": timestamp(),
        }
        return self.succeed(
            job_data, output, f"Validation {'passed' if valid else 'failed'}",
            data={"valid": valid, "errors": errors},
            level=LogLevel.INFO if valid else LogLevel.WARN,
            next_nodes=["valid"] if valid else ["invalid"],
        )


# =============================================================================
# ERROR HANDLER
# =============================================================================

class ErrorHandlerConfig(BaseNodeConfig):
    type: str = "catch"
    fallback_action: str = Field(default="log", alias="fallbackAction")

    @field_validator("type")
    @classmethod
    def check_type(cls, v: str) -> str:
        return check_allowed(v, ("catch", "retry", "fallback"), "error handler type")

    @field_validator("fallback_action")
    @classmethod
    def check_fallback_action(cls, v: str) -> str:
        return check_allowed(v, ("log", "notify", "fallback", "retry"), "fallback action")


class ErrorHandlerProcessor(BaseProcessor):
    """Passes through when there is no upstream error, otherwise marks it handled."""

    node_type = "error_handler"
    config_model = ErrorHandlerConfig
    label = "Error handling"

    async def run(self, job_data: NodeJobData, config: ErrorHandlerConfig) -> NodeExecutionResult:
        error = job_data.inputs.get("error")
        if not error:
            output = {"handled": False, "type": config.type, "timestamp": timestamp()}
            return self.succeed(job_data, output, "No error to handle", next_nodes=["success"])

        output = {
            "error": error,
            "type": config.type,
            "fallbackAction": config.fallback_action,
            "handled": True,
            "timestamp": timestamp(),
        }
        return self.succeed(
            job_data, output, f"Error handled with {config.type} ({config.fallback_action})",
            data={"type": config.type, "fallbackAction": config.fallback_action},
            level=LogLevel.WARN,
            next_nodes=["handled"],
        )


# =============================================================================
# RETRY
# =============================================================================

class RetryNodeConfig(BaseNodeConfig):
    attempts: int = Field(default=3, ge=1, le=10)
    delay: int = Field(default=1000, ge=0)  # milliseconds
    condition: Optional[str] = None


class RetryProcessor(BaseProcessor):
    """Decides retry/failed from an optional condition (retry when absent)."""

    node_type = "retry"
    config_model = RetryNodeConfig
    label = "Retry logic"

    async def run(self, job_data: NodeJobData, config: RetryNodeConfig) -> NodeExecutionResult:
        should_retry = (
            safe_condition(config.condition, job_data.inputs, job_data.node_id)
            if config.condition else True
        )
        output = {
            "attempts": config.attempts,
            "delay": config.delay,
            "shouldRetry": should_retry,
            "timestamp": timestamp(),
        }
        return self.succeed(
            job_data, output,
            f"Retry logic evaluated: {'will retry' if should_retry else 'will not retry'}",
            data={"attempts": config.attempts, "delay": config.delay, "shouldRetry": should_retry},
            next_nodes=["retry"] if should_retry else ["failed"],
        )


CONDITION_PROCESSORS: Dict[str, type] = {
    ConditionIfProcessor.node_type: ConditionIfProcessor,
    ValidationProcessor.node_type: ValidationProcessor,
    ErrorHandlerProcessor.node_type: ErrorHandlerProcessor,
    RetryProcessor.node_type: RetryProcessor,
}
