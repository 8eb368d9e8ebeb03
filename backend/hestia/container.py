"""
Service container
=================
Explicitly wires engine -> unit of work -> collaborators -> services.
Collaborator implementations are chosen here from settings, never inside
business logic.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from hestia.config import Settings, get_settings
from hestia.db.session import create_engine, create_schema, create_session_factory
from hestia.db.unit_of_work import UnitOfWork
from hestia.services.actor_service import ActorService
from hestia.services.contract_service import ContractService
from hestia.services.investigation_service import InvestigationService
from hestia.services.notifications import (
    InMemoryNotifier,
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
    WebhookNotifier,
)
from hestia.services.payment_service import PaymentService
from hestia.services.policy_service import PolicyService
from hestia.services.state_machine import PolicyStateMachine
from hestia.services.storage import DocumentStorage, InMemoryStorage, LocalFileStorage

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    uow: UnitOfWork
    notifier: Notifier
    storage: DocumentStorage
    state_machine: PolicyStateMachine
    policies: PolicyService
    actors: ActorService
    investigations: InvestigationService
    payments: PaymentService
    contracts: ContractService

    async def create_schema(self) -> None:
        await create_schema(self.engine)

    async def dispose(self) -> None:
        await self.engine.dispose()


def build_notifier(settings: Settings) -> Notifier:
    backend = settings.NOTIFICATION_BACKEND
    if backend == "webhook":
        if not settings.NOTIFICATION_WEBHOOK_URL:
            raise ValueError("NOTIFICATION_WEBHOOK_URL is required for the webhook notifier")
        return WebhookNotifier(settings.NOTIFICATION_WEBHOOK_URL, timeout=settings.NOTIFICATION_TIMEOUT_SEC)
    if backend == "memory":
        return InMemoryNotifier()
    return LoggingNotifier()


def build_storage(settings: Settings) -> DocumentStorage:
    if settings.STORAGE_BACKEND == "memory":
        return InMemoryStorage()
    return LocalFileStorage(settings.STORAGE_ROOT)


def build_container(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    notifier: Notifier | None = None,
    storage: DocumentStorage | None = None,
) -> ServiceContainer:
    settings = settings or get_settings()
    engine = engine or create_engine(settings.DATABASE_URL, echo=(settings.ENVIRONMENT == "development"))
    uow = UnitOfWork(create_session_factory(engine))
    notifier = notifier or build_notifier(settings)
    storage = storage or build_storage(settings)
    dispatcher = NotificationDispatcher(notifier, uow)
    state_machine = PolicyStateMachine(
        required_references=settings.REQUIRED_REFERENCES,
        default_contract_months=settings.DEFAULT_CONTRACT_LENGTH_MONTHS,
    )
    logger.info(
        f"Service container built: storage={type(storage).__name__}, notifier={type(notifier).__name__}"
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        uow=uow,
        notifier=notifier,
        storage=storage,
        state_machine=state_machine,
        policies=PolicyService(uow, state_machine, dispatcher, settings),
        actors=ActorService(uow, storage, dispatcher, settings),
        investigations=InvestigationService(uow, state_machine, dispatcher),
        payments=PaymentService(uow, dispatcher, settings),
        contracts=ContractService(uow, storage, state_machine, settings),
    )
