"""API route modules."""
from __future__ import annotations

from . import (
    health,
    leads,
    billing,
    income,
    settings,
)

__all__ = [
    "health",
    "leads",
    "billing",
    "income",
    "settings",
]
