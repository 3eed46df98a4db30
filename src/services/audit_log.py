"""Audit log for assignment and billing actions."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging_config import get_logger
from core.models import AuditLog
from core.utils import enum_value

LOGGER = get_logger(__name__)


class AuditAction:
    """Constants for audit log actions."""
    LEAD_AUTO_ASSIGNED = "lead_auto_assigned"
    LEAD_ASSIGNED = "lead_assigned"
    ASSIGNMENT_ACCEPTED = "assignment_accepted"
    ASSIGNMENT_REJECTED = "assignment_rejected"
    CANCELLATION_REQUESTED = "cancellation_requested"
    CANCELLATION_APPROVED = "cancellation_approved"
    CANCELLATION_REJECTED = "cancellation_rejected"
    INVOICE_GENERATED = "invoice_generated"
    INVOICE_STATUS_CHANGED = "invoice_status_changed"
    SETTINGS_UPDATED = "settings_updated"


class AuditLogService:
    """Append-only audit trail."""

    def __init__(self, session: Session):
        """Initialize the audit log service."""
        self.session = session

    def create_log(
        self,
        action: str,
        message: str,
        actor_type: str = "system",
        actor_name: str = "system",
        service_type: Any = None,
        lead_id: Optional[int] = None,
        partner_id: Optional[int] = None,
        status: str = "success",
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        """
        Append an audit entry.

        Best effort: the entry is written in a savepoint, and a failure is
        logged without touching the caller's transaction.

        Args:
            action: What happened (use AuditAction constants).
            message: Human-readable summary.
            actor_type: "system", "admin" or "partner".
            actor_name: Who did it.
            service_type: Service the action concerns, if any.
            lead_id: Lead the action concerns, if any.
            partner_id: Partner the action concerns, if any.
            status: "success" or "failed".
            details: Optional JSON details.

        Returns:
            The created AuditLog, or None if it could not be written.
        """
        entry = AuditLog(
            actor_type=actor_type,
            actor_name=actor_name,
            action=action,
            service_type=enum_value(service_type),
            lead_id=lead_id,
            partner_id=partner_id,
            status=status,
            message=message,
            details=details,
        )
        try:
            with self.session.begin_nested():
                self.session.add(entry)
        except SQLAlchemyError as e:
            LOGGER.warning(
                f"Could not write audit log '{action}': {e}",
                extra={"lead_id": lead_id, "partner_id": partner_id},
            )
            return None

        LOGGER.debug(f"Audit: {action} - {message}")
        return entry

    def get_logs(
        self,
        lead_id: Optional[int] = None,
        partner_id: Optional[int] = None,
        limit: int = 50,
    ) -> List[AuditLog]:
        """
        Get audit entries, newest first.

        Args:
            lead_id: Only entries for this lead.
            partner_id: Only entries for this partner.
            limit: Maximum number of entries.
        """
        query = self.session.query(AuditLog)
        if lead_id is not None:
            query = query.filter(AuditLog.lead_id == lead_id)
        if partner_id is not None:
            query = query.filter(AuditLog.partner_id == partner_id)
        return query.order_by(AuditLog.id.desc()).limit(limit).all()


def get_audit_log_service(session: Session) -> AuditLogService:
    """Get an AuditLogService instance."""
    return AuditLogService(session)


__all__ = [
    "AuditAction",
    "AuditLogService",
    "get_audit_log_service",
]
