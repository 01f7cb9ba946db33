"""
Application bootstrap.

Wires the runtime pieces into a dependency_injector container and starts
the modules in the required order:

1. every module binds its contract implementations,
2. the registry is validated against the descriptors and sealed,
3. every module subscribes its event listeners.

Startup fails fast on duplicate or missing bindings.
"""

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from dependency_injector import containers, providers
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from modulith.contracts import ContractRegistry
from modulith.core.config import get_settings
from modulith.core.errors import ConfigurationError
from modulith.core.logging import configure_logging, get_logger
from modulith.descriptors import DescriptorStore
from modulith.events import (
    DeliveryWorker,
    EventBus,
    InMemoryDeliveryRepository,
    SqlDeliveryRepository,
)

logger = get_logger(__name__)


@runtime_checkable
class ModuleInstaller(Protocol):
    """Startup hooks of one business module."""

    name: str

    def register_contracts(self, registry: ContractRegistry) -> None:
        """Bind this module's contract implementations."""

    def register_listeners(self, bus: EventBus) -> None:
        """Subscribe this module's event listeners."""


class ModulithContainer(containers.DeclarativeContainer):
    """Runtime dependency injection container."""

    settings = providers.Singleton(get_settings)

    descriptor_store = providers.Dependency(instance_of=DescriptorStore)

    contract_registry = providers.Singleton(ContractRegistry)

    delivery_repository = providers.Singleton(InMemoryDeliveryRepository)

    event_bus = providers.Singleton(
        EventBus,
        repository=delivery_repository,
        registry=contract_registry,
        store=descriptor_store,
        config=settings.provided.event_bus,
    )

    delivery_worker = providers.Singleton(DeliveryWorker, bus=event_bus)


def create_container(
    store: DescriptorStore, engine: Engine | None = None
) -> ModulithContainer:
    """
    Create the runtime container and configure logging from settings.

    Deliveries are stored through SQL when an engine is given or a database
    URL is configured, in memory otherwise.
    """
    configure_logging()
    container = ModulithContainer()
    container.descriptor_store.override(providers.Object(store))

    database_url = get_settings().event_bus.database_url
    if engine is None and database_url:
        engine = create_engine(database_url)

    if engine is not None:
        repository = SqlDeliveryRepository(engine)
        repository.create_schema()
        container.delivery_repository.override(providers.Object(repository))

    return container


class Bootstrapper:
    """
    Starts modules against a container.

    Usage:
        container = create_container(DescriptorStore.from_path("modules.yaml"))
        Bootstrapper(container, [BillingInstaller(), ShippingInstaller()]).start()
        container.event_bus().publish(...)
    """

    def __init__(self, container: ModulithContainer, installers: Iterable[ModuleInstaller]):
        self.container = container
        self.installers = list(installers)

        names = [installer.name for installer in self.installers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(
                f"Duplicate module installers: {', '.join(duplicates)}",
                config_key="installers",
            )

    def start(self) -> ModulithContainer:
        """
        Run contract registration, registry validation and listener subscription.

        Raises:
            UnresolvedModuleError: If an installer names an undeclared module
            DuplicateBindingError: If two implementations bind the same contract
            UnboundContractError: If a declared contract has no binding
        """
        store: DescriptorStore = self.container.descriptor_store()
        registry: ContractRegistry = self.container.contract_registry()

        logger.info("Starting module bootstrap", module_count=len(self.installers))

        for installer in self.installers:
            store.get(installer.name)
            installer.register_contracts(registry)

        registry.validate_all(store)

        bus: EventBus = self.container.event_bus()
        for installer in self.installers:
            installer.register_listeners(bus)

        logger.info(
            "Module bootstrap completed",
            binding_count=len(registry.bindings()),
            subscription_count=len(bus.subscriptions()),
        )
        return self.container
