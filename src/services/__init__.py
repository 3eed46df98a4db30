"""Application services for leadmarket.

This module provides:
- Persisted business settings (pricing, tax, limits)
- Audit logging
- Partner notifications (webhook, dry-run aware)
- Named scheduler locks
- Income reporting
- Invoicing and revenue
- Partner configuration and performance

Import order matters: billing and partners use the domain layer, which in
turn uses the settings, audit and notification services.
"""
from __future__ import annotations

from .settings_store import (
    DEFAULT_PRICING,
    SystemSettings,
    SettingsStore,
    get_settings_store,
)
from .audit_log import (
    AuditAction,
    AuditLogService,
    get_audit_log_service,
)
from .notification import (
    NotificationService,
    get_notification_service,
)
from .locking import (
    SchedulerLockService,
    get_scheduler_lock_service,
)
from .income import (
    IncomeSummary,
    IncomeReporter,
    get_income_reporter,
)
from .billing import (
    BillingReadyPartner,
    BillingAggregator,
    get_billing_aggregator,
)
from .partners import (
    PartnerRecommendation,
    PartnerService,
    get_partner_service,
)

__all__ = [
    # Settings
    "DEFAULT_PRICING",
    "SystemSettings",
    "SettingsStore",
    "get_settings_store",
    # Audit
    "AuditAction",
    "AuditLogService",
    "get_audit_log_service",
    # Notification
    "NotificationService",
    "get_notification_service",
    # Locking
    "SchedulerLockService",
    "get_scheduler_lock_service",
    # Income
    "IncomeSummary",
    "IncomeReporter",
    "get_income_reporter",
    # Billing
    "BillingReadyPartner",
    "BillingAggregator",
    "get_billing_aggregator",
    # Partners
    "PartnerRecommendation",
    "PartnerService",
    "get_partner_service",
]
