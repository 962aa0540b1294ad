"""Queue-backed workflow execution engine."""

from autoflow.constants import SERVICE_VERSION

__version__ = SERVICE_VERSION
