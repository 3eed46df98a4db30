"""Partner notifications for new lead assignments.

Delivery is fire-and-forget. Assignments queue their notification on the
session with send_after_commit(); it goes out only once the transaction that
created the assignment has committed, and is dropped if it rolls back.
Every delivery failure is logged and swallowed.
"""
from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import Settings, get_settings
from core.logging_config import get_logger, log_external_call
from core.models import Lead, Partner
from core.utils import CircuitBreaker, utcnow

LOGGER = get_logger(__name__)

# Shared across service instances so repeated failures open the circuit process-wide
_webhook_circuit = CircuitBreaker(name="notification_webhook", failure_threshold=5, recovery_timeout=300)

# session.info key holding (notifier, payload) pairs awaiting commit
PENDING_NOTIFICATIONS_KEY = "pending_notifications"


def build_assignment_payload(partner: Partner, lead: Lead) -> Dict[str, Any]:
    """JSON body describing a new assignment."""
    return {
        "event": "lead_assigned",
        "sent_at": utcnow().isoformat(),
        "partner": {
            "id": partner.id,
            "partner_number": partner.partner_number,
            "company_name": partner.company_name,
            "email": partner.email,
        },
        "lead": {
            "id": lead.id,
            "lead_number": lead.lead_number,
            "service_type": lead.service_type,
        },
    }


class NotificationService:
    """
    Sends assignment notifications to the configured webhook.

    While DRY_RUN is on, or notifications are disabled, the message is only
    logged.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None):
        """Initialize the notification service."""
        self.settings = settings or get_settings()
        self.client = client
        self.circuit = _webhook_circuit

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        before_sleep=before_sleep_log(LOGGER, log_level=20),
        reraise=True,
    )
    def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        timeout = self.settings.notification_timeout_seconds
        if self.client is not None:
            response = self.client.post(self.settings.notification_webhook_url, json=payload, timeout=timeout)
        else:
            response = httpx.post(self.settings.notification_webhook_url, json=payload, timeout=timeout)
        response.raise_for_status()
        return response

    def send_lead_assignment_notification(self, partner: Partner, lead: Lead) -> bool:
        """
        Tell a partner about a newly assigned lead, right away.

        Args:
            partner: The partner the lead was offered to.
            lead: The assigned lead.

        Returns:
            True if the notification was delivered (or logged in dry-run mode).
        """
        return self.deliver(build_assignment_payload(partner, lead))

    def send_after_commit(self, session: Session, partner: Partner, lead: Lead) -> None:
        """
        Queue an assignment notification until `session` commits.

        The payload is built now, while the rows are loaded; nothing is sent
        if the transaction rolls back.
        """
        pending = session.info.setdefault(PENDING_NOTIFICATIONS_KEY, [])
        pending.append((self, build_assignment_payload(partner, lead)))

    def deliver(self, payload: Dict[str, Any]) -> bool:
        """
        Send a prepared assignment payload. Never raises.

        Returns:
            True if the notification was delivered (or logged in dry-run mode).
        """
        payload = {**payload, "sent_at": utcnow().isoformat()}
        lead, partner = payload["lead"], payload["partner"]
        context = {"lead_id": lead["id"], "partner_id": partner["id"]}

        if not self.settings.is_notification_live():
            LOGGER.info(
                f"[DRY RUN] Lead {lead['lead_number']} assignment notification for partner {partner['partner_number']}",
                extra=context,
            )
            return True

        if not self.settings.is_webhook_configured():
            LOGGER.warning("Notification webhook not configured, cannot notify partner", extra=context)
            return False

        if not self.circuit.can_execute():
            LOGGER.warning("Notification circuit breaker is open, skipping notification", extra=context)
            return False

        started = time.monotonic()
        try:
            self._post(payload)
        except Exception as e:
            # httpx.InvalidURL and friends are not httpx.HTTPError subclasses
            self.circuit.record_failure()
            log_external_call(
                LOGGER,
                service="notification_webhook",
                operation="lead_assigned",
                success=False,
                duration_ms=(time.monotonic() - started) * 1000,
                error=f"{type(e).__name__}: {e}",
                **context,
            )
            return False

        self.circuit.record_success()
        log_external_call(
            LOGGER,
            service="notification_webhook",
            operation="lead_assigned",
            success=True,
            duration_ms=(time.monotonic() - started) * 1000,
            **context,
        )
        return True


@event.listens_for(Session, "after_commit")
def _send_pending_notifications(session: Session) -> None:
    # Savepoint releases fire this too; wait for the outermost commit
    if session.in_nested_transaction():
        return
    pending: List[Tuple[NotificationService, Dict[str, Any]]] = session.info.pop(PENDING_NOTIFICATIONS_KEY, [])
    for notifier, payload in pending:
        try:
            notifier.deliver(payload)
        except Exception:
            LOGGER.warning("Queued assignment notification failed", exc_info=True)


@event.listens_for(Session, "after_soft_rollback")
def _drop_pending_notifications(session: Session, previous_transaction: SessionTransaction) -> None:
    if previous_transaction.nested:
        return
    dropped = session.info.pop(PENDING_NOTIFICATIONS_KEY, [])
    if dropped:
        LOGGER.info(f"Dropped {len(dropped)} assignment notifications after rollback")


def get_notification_service(settings: Optional[Settings] = None) -> NotificationService:
    """Get a NotificationService instance."""
    return NotificationService(settings)


__all__ = [
    "PENDING_NOTIFICATIONS_KEY",
    "build_assignment_payload",
    "NotificationService",
    "get_notification_service",
]
