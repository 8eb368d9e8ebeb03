"""
Notification collaborator
=========================
Invitations, rejection notices and payment confirmations leave the system
through a ``Notifier``. Delivery is best-effort: it runs after the
triggering transaction has committed, and a failure is recorded as a
``notification_failed`` activity instead of failing the operation.

Implementations:
  LoggingNotifier   writes the message to the log (development default)
  WebhookNotifier   POSTs JSON to NOTIFICATION_WEBHOOK_URL (mail relay)
  InMemoryNotifier  keeps messages in a list (tests)
"""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from hestia.core.enums import PerformerType
from hestia.core.errors import ExternalServiceFailure

if TYPE_CHECKING:
    from hestia.db.unit_of_work import Transaction, UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """One outbound message."""
    kind: str                           # actor_invitation | actor_rejected | investigation_result | ...
    recipient_email: str
    recipient_name: str | None = None
    policy_number: str | None = None
    actor_type: str | None = None
    access_url: str | None = None
    token_expiry: str | None = None
    initiated_by: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


class Notifier(ABC):
    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver or raise ``ExternalServiceFailure``."""


class LoggingNotifier(Notifier):
    async def send(self, notification: Notification) -> None:
        logger.info(
            f"Notification {notification.kind} -> {notification.recipient_email}",
            extra={"notification": notification.to_payload()},
        )


class WebhookNotifier(Notifier):
    """
    Relay notifications to an HTTP mail gateway.

    Usage:
        notifier = WebhookNotifier("https://mail-relay.internal/send")
        await notifier.send(Notification(kind="actor_invitation", ...))
    """

    def __init__(self, url: str, timeout: float = 5.0):
        self._url = url
        self._timeout = timeout

    async def send(self, notification: Notification) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=notification.to_payload())
                response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ExternalServiceFailure(
                f"Notification relay failed: {e}", service="notifications", kind=notification.kind,
            ) from e


class InMemoryNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self.fail = False

    async def send(self, notification: Notification) -> None:
        if self.fail:
            raise ExternalServiceFailure("Notifier unavailable", service="notifications", kind=notification.kind)
        self.sent.append(notification)

    def of_kind(self, kind: str) -> list[Notification]:
        return [n for n in self.sent if n.kind == kind]


class NotificationDispatcher:
    """Schedules delivery after commit and records failures as activities."""

    def __init__(self, notifier: Notifier, uow: UnitOfWork) -> None:
        self._notifier = notifier
        self._uow = uow

    def schedule(self, tx: Transaction, policy_id: uuid.UUID, notification: Notification) -> None:
        async def _deliver() -> None:
            await self.deliver(policy_id, notification)

        tx.after_commit(_deliver)

    async def deliver(self, policy_id: uuid.UUID, notification: Notification) -> bool:
        try:
            await self._notifier.send(notification)
            return True
        except ExternalServiceFailure as e:
            logger.error(
                f"Notification {notification.kind} to {notification.recipient_email} failed: {e.message}",
                exc_info=True,
            )
            async with self._uow.transaction() as tx:
                tx.repo.add_activity(
                    policy_id,
                    "notification_failed",
                    f"Failed to deliver {notification.kind} to {notification.recipient_email}",
                    performed_by_type=PerformerType.SYSTEM,
                    performed_by_id=None,
                    details={
                        "kind": notification.kind,
                        "recipient": notification.recipient_email,
                        "error": e.message,
                    },
                )
            return False
