"""Centralized constants for node types, queues and events.

Single source of truth for the node-type identifiers the engine dispatches on,
so the engine, the processors and the tests never disagree on a string.
"""

from typing import FrozenSet

# =============================================================================
# QUEUES
# =============================================================================

WORKFLOW_QUEUE_NAME = "workflow-execution"
NODE_QUEUE_NAME = "node-execution"

WORKFLOW_JOB_NAME = "execute-workflow"

SERVICE_VERSION = "1.0.0"

# =============================================================================
# NODE TYPE CLASSIFICATION (used by the workflow job handler)
# =============================================================================

# Nodes run first, in the trigger pass
TRIGGER_TYPES: FrozenSet[str] = frozenset([
    'trigger',
    'manual_trigger',
    'webhook_trigger',
    'schedule_trigger',
])

# Nodes run second, in the action pass
ACTION_TYPES: FrozenSet[str] = frozenset([
    'action',
    'http_request',
    'send_email',
    'database_save',
])

# Trigger types whose inputs receive the run's trigger data
TRIGGER_DATA_TYPES: FrozenSet[str] = frozenset([
    'trigger',
    'manual_trigger',
])

# =============================================================================
# BUILT-IN PROCESSOR TYPES (registered by the execution service)
# =============================================================================

TRIGGER_PROCESSOR_TYPES: FrozenSet[str] = frozenset([
    'manual_trigger',
    'webhook_trigger',
    'schedule_trigger',
    'database_trigger',
])

ACTION_PROCESSOR_TYPES: FrozenSet[str] = frozenset([
    'http_request',
    'send_email',
    'database_save',
    'whatsapp_send',
    'payment_process',
])

CONDITION_PROCESSOR_TYPES: FrozenSet[str] = frozenset([
    'condition_if',
    'validation',
    'error_handler',
    'retry',
])

UTILITY_PROCESSOR_TYPES: FrozenSet[str] = frozenset([
    'delay',
    'data_transform_util',
    'clone',
    'code_execution',
    'logger',
])

BUILTIN_PROCESSOR_TYPES: FrozenSet[str] = (
    TRIGGER_PROCESSOR_TYPES
    | ACTION_PROCESSOR_TYPES
    | CONDITION_PROCESSOR_TYPES
    | UTILITY_PROCESSOR_TYPES
)

# =============================================================================
# ALLOW-LISTS
# =============================================================================

HTTP_METHODS: FrozenSet[str] = frozenset(['GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'HEAD', 'OPTIONS'])
WEBHOOK_METHODS: FrozenSet[str] = frozenset(['GET', 'POST', 'PUT', 'DELETE', 'PATCH'])
EMAIL_PROVIDERS: FrozenSet[str] = frozenset(['smtp', 'sendgrid', 'mailgun', 'ses'])
DATABASE_TRIGGER_OPERATIONS: FrozenSet[str] = frozenset(['insert', 'update', 'delete'])
DATABASE_SAVE_OPERATIONS: FrozenSet[str] = frozenset(['insert', 'update', 'delete', 'upsert'])
WHATSAPP_MESSAGE_TYPES: FrozenSet[str] = frozenset(['text', 'image', 'document', 'audio', 'video'])
PAYMENT_CURRENCIES: FrozenSet[str] = frozenset(['BRL', 'USD', 'EUR', 'GBP'])
PAYMENT_PROVIDERS: FrozenSet[str] = frozenset(['stripe', 'mercadopago', 'paypal', 'pagseguro'])
CODE_LANGUAGES: FrozenSet[str] = frozenset(['javascript'])

# =============================================================================
# EVENTS
# =============================================================================

WORKFLOW_STARTED = "workflow:started"
WORKFLOW_COMPLETED = "workflow:completed"
WORKFLOW_FAILED = "workflow:failed"
NODE_STARTED = "node:started"
NODE_COMPLETED = "node:completed"
NODE_FAILED = "node:failed"

# =============================================================================
# PER-JOB REMOVAL POLICY (applied to every enqueued workflow and node job)
# =============================================================================

JOB_REMOVE_ON_COMPLETE = 10
JOB_REMOVE_ON_FAIL = 5
