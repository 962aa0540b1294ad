"""Dependency injection container for the execution service."""

from typing import Optional

from dependency_injector import containers, providers

from autoflow.core.config import Settings
from autoflow.services.execution import EventBus, InMemoryWorkflowRepository
from autoflow.services.execution_service import WorkflowExecutionService
from autoflow.services.gateways import Gateways


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Workflow definitions (replace with a persistent repository in deployments)
    workflow_repository = providers.Singleton(
        InMemoryWorkflowRepository,
    )

    # Outbound gateways shared by action processors
    gateways = providers.Singleton(
        Gateways,
    )

    # Lifecycle events
    event_bus = providers.Singleton(
        EventBus,
    )

    execution_service = providers.Singleton(
        WorkflowExecutionService,
        settings=settings,
        repository=workflow_repository,
        gateways=gateways,
        events=event_bus,
    )


def create_container(settings: Optional[Settings] = None) -> Container:
    """Build a container, optionally pinned to explicit settings."""
    container = Container()
    if settings is not None:
        container.settings.override(providers.Object(settings))
    return container
