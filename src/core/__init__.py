"""Core module exports."""
from __future__ import annotations

from core.config import Settings, get_settings, reload_settings
from core.db import get_session, get_readonly_session, SessionLocal
from core.exceptions import (
    # Base
    LeadMarketError,
    # Configuration
    ConfigurationError,
    # Database
    DatabaseError,
    # Input
    ValidationError,
    # Geo
    GeoError,
    InvalidCoordinateError,
    # Lookup
    NotFoundError,
    LeadNotFoundError,
    PartnerNotFoundError,
    AssignmentNotFoundError,
    # Assignment
    AssignmentError,
    LeadNotAvailableError,
    DuplicateAssignmentError,
    ImmutableFieldError,
    InvalidStatusTransitionError,
    CancellationWindowExpiredError,
    # Billing
    BillingError,
    NoLeadsToInvoiceError,
    BillingInProgressError,
    # External Services
    ExternalServiceError,
    NotificationError,
)
from core.logging_config import (
    setup_logging,
    get_logger,
    get_context_logger,
    log_external_call,
    log_match_decision,
    JSONFormatter,
    ContextLogger,
)
from core.models import (
    Base,
    Lead,
    Partner,
    PartnerAssignment,
    Invoice,
    InvoiceLineItem,
    Revenue,
    PlatformSettings,
)
from core.types import BillingPeriod, GeoPoint, SettingsSnapshot

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reload_settings",
    # Database
    "get_session",
    "get_readonly_session",
    "SessionLocal",
    "Base",
    # Models
    "Lead",
    "Partner",
    "PartnerAssignment",
    "Invoice",
    "InvoiceLineItem",
    "Revenue",
    "PlatformSettings",
    # Value types
    "BillingPeriod",
    "GeoPoint",
    "SettingsSnapshot",
    # Exceptions
    "LeadMarketError",
    "ConfigurationError",
    "DatabaseError",
    "ValidationError",
    "GeoError",
    "InvalidCoordinateError",
    "NotFoundError",
    "LeadNotFoundError",
    "PartnerNotFoundError",
    "AssignmentNotFoundError",
    "AssignmentError",
    "LeadNotAvailableError",
    "DuplicateAssignmentError",
    "ImmutableFieldError",
    "InvalidStatusTransitionError",
    "CancellationWindowExpiredError",
    "BillingError",
    "NoLeadsToInvoiceError",
    "BillingInProgressError",
    "ExternalServiceError",
    "NotificationError",
    # Logging
    "setup_logging",
    "get_logger",
    "get_context_logger",
    "log_external_call",
    "log_match_decision",
    "JSONFormatter",
    "ContextLogger",
]
