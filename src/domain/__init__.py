"""Domain layer for leadmarket business logic.

Matching, selection and assignment of leads to partners. Infrastructure
(CLI, API, scheduler) goes through these services rather than touching
models directly.
"""
from __future__ import annotations

from .geo import RadiusCheck, distance_km, is_within_radius
from .service_area import AreaMatch, MatchMode, ServiceAreaResolver, ServicePreferences
from .eligibility import EligibilityFilter
from .selection import AssignmentSelector
from .lead_status import can_assign_more_partners, compute_lead_status
from .assignment import AssignFailure, AssignResult, LeadAssignmentCoordinator

__all__ = [
    # Geo
    "RadiusCheck",
    "distance_km",
    "is_within_radius",
    # Service area
    "AreaMatch",
    "MatchMode",
    "ServiceAreaResolver",
    "ServicePreferences",
    # Eligibility / selection
    "EligibilityFilter",
    "AssignmentSelector",
    # Lead status
    "compute_lead_status",
    "can_assign_more_partners",
    # Assignment
    "AssignFailure",
    "AssignResult",
    "LeadAssignmentCoordinator",
]
