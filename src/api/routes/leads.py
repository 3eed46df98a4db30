"""Lead assignment routes."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import get_coordinator, get_partner_service
from core.logging_config import get_logger
from domain.assignment import LeadAssignmentCoordinator
from services.partners import PartnerService

router = APIRouter()
LOGGER = get_logger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================


class ManualAssignmentRequest(BaseModel):
    """Request body for an administrator assigning a lead."""

    partner_id: int = Field(..., description="Partner to offer the lead to")
    actor_name: str = Field("admin", description="Who made the assignment")


class AssignmentStatusUpdate(BaseModel):
    """Request body for an assignment status change."""

    status: str = Field(..., description="accepted, rejected, cancellation_requested or cancelled")
    reason: Optional[str] = Field(None, description="Rejection or cancellation reason")


class CancellationDecision(BaseModel):
    """Request body for approving or rejecting a cancellation request."""

    actor_name: str = Field("admin")
    reason: Optional[str] = Field(None, description="Why the request was rejected")


# =============================================================================
# Routes
# =============================================================================


@router.post("/{lead_id}/auto-assign")
def auto_assign_lead(
    lead_id: int,
    coordinator: LeadAssignmentCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Offer the lead to the best eligible partner."""
    result = coordinator.auto_assign(lead_id)
    return result.to_dict()


@router.post("/{lead_id}/assignments", status_code=201)
def assign_lead(
    lead_id: int,
    body: ManualAssignmentRequest,
    coordinator: LeadAssignmentCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Offer the lead to a specific partner."""
    assignment = coordinator.assign_lead_to_partner(lead_id, body.partner_id, actor_name=body.actor_name)
    return assignment.to_dict()


@router.put("/{lead_id}/assignments/{partner_id}/status")
def update_assignment_status(
    lead_id: int,
    partner_id: int,
    body: AssignmentStatusUpdate,
    coordinator: LeadAssignmentCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Accept, reject or request cancellation of an assignment."""
    coordinator.update_assignment_status(lead_id, partner_id, body.status, reason=body.reason)
    return coordinator.get_lead_status(lead_id)


@router.post("/{lead_id}/assignments/{partner_id}/cancellation/approve")
def approve_cancellation(
    lead_id: int,
    partner_id: int,
    body: Optional[CancellationDecision] = None,
    coordinator: LeadAssignmentCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Approve a partner's cancellation request."""
    body = body or CancellationDecision()
    assignment = coordinator.approve_cancellation(lead_id, partner_id, actor_name=body.actor_name)
    return assignment.to_dict()


@router.post("/{lead_id}/assignments/{partner_id}/cancellation/reject")
def reject_cancellation(
    lead_id: int,
    partner_id: int,
    body: Optional[CancellationDecision] = None,
    coordinator: LeadAssignmentCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Reject a partner's cancellation request."""
    body = body or CancellationDecision()
    assignment = coordinator.reject_cancellation(
        lead_id, partner_id, reason=body.reason, actor_name=body.actor_name
    )
    return assignment.to_dict()


@router.get("/{lead_id}/status")
def get_lead_status(
    lead_id: int,
    coordinator: LeadAssignmentCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Computed status of the lead and its assignments."""
    return coordinator.get_lead_status(lead_id)


@router.get("/{lead_id}/recommendations")
def get_recommendations(
    lead_id: int,
    limit: int = Query(default=3, ge=1, le=20),
    partners: PartnerService = Depends(get_partner_service),
) -> Dict[str, Any]:
    """Best-scoring eligible partners for the lead."""
    recommendations = partners.get_recommendations(lead_id, limit=limit)
    return {
        "lead_id": lead_id,
        "items": [r.to_dict() for r in recommendations],
    }
