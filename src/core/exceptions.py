"""Custom exceptions for the leadmarket application."""
from __future__ import annotations


class LeadMarketError(Exception):
    """Base exception for all application errors."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(LeadMarketError):
    """Raised when required configuration is missing or invalid."""

    pass


# =============================================================================
# Database Errors
# =============================================================================


class DatabaseError(LeadMarketError):
    """Base exception for database-related errors."""

    pass


# =============================================================================
# Input Errors
# =============================================================================


class ValidationError(LeadMarketError):
    """Raised when caller-supplied data fails validation."""

    pass


# =============================================================================
# Geo Errors
# =============================================================================


class GeoError(LeadMarketError):
    """Base exception for geographic calculations."""

    pass


class InvalidCoordinateError(GeoError):
    """Raised when a latitude/longitude pair is missing, non-numeric or out of range."""

    pass


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(LeadMarketError):
    """Base exception for a referenced entity that does not exist."""

    pass


class LeadNotFoundError(NotFoundError):
    """Raised when a lead ID does not resolve to a lead."""

    pass


class PartnerNotFoundError(NotFoundError):
    """Raised when a partner ID does not resolve to a partner."""

    pass


class AssignmentNotFoundError(NotFoundError):
    """Raised when a partner has no assignment on the given lead."""

    pass


# =============================================================================
# Assignment Errors
# =============================================================================


class AssignmentError(LeadMarketError):
    """Base exception for lead assignment errors."""

    pass


class LeadNotAvailableError(AssignmentError):
    """Raised when a lead can no longer be offered to partners."""

    pass


class DuplicateAssignmentError(AssignmentError):
    """Raised when the partner already holds an assignment on the lead."""

    pass


class ImmutableFieldError(AssignmentError):
    """Raised on an attempt to rewrite the frozen price or tier of an assignment."""

    pass


class InvalidStatusTransitionError(AssignmentError):
    """Raised when an assignment cannot move to the requested status."""

    pass


class CancellationWindowExpiredError(InvalidStatusTransitionError):
    """Raised when a cancellation is requested after the allowed time limit."""

    pass


# =============================================================================
# Billing Errors
# =============================================================================


class BillingError(LeadMarketError):
    """Base exception for invoicing and revenue errors."""

    pass


class NoLeadsToInvoiceError(BillingError):
    """Raised when invoice generation finds nothing billable."""

    pass


class BillingInProgressError(BillingError):
    """Raised when another bulk billing run holds the lock for the service type."""

    pass


# =============================================================================
# External Service Errors
# =============================================================================


class ExternalServiceError(LeadMarketError):
    """Base exception for all external service errors."""

    pass


class NotificationError(ExternalServiceError):
    """Raised when a partner notification cannot be delivered."""

    pass


__all__ = [
    # Base
    "LeadMarketError",
    # Configuration
    "ConfigurationError",
    # Database
    "DatabaseError",
    # Input
    "ValidationError",
    # Geo
    "GeoError",
    "InvalidCoordinateError",
    # Lookup
    "NotFoundError",
    "LeadNotFoundError",
    "PartnerNotFoundError",
    "AssignmentNotFoundError",
    # Assignment
    "AssignmentError",
    "LeadNotAvailableError",
    "DuplicateAssignmentError",
    "ImmutableFieldError",
    "InvalidStatusTransitionError",
    "CancellationWindowExpiredError",
    # Billing
    "BillingError",
    "NoLeadsToInvoiceError",
    "BillingInProgressError",
    # External Services
    "ExternalServiceError",
    "NotificationError",
]
