"""Core utility functions."""
from __future__ import annotations

import enum
import secrets
import string
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from core.logging_config import get_logger

LOGGER = get_logger(__name__)

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits

SERVICE_PREFIXES = {
    "moving": "MOV",
    "cleaning": "CLN",
}


def enum_value(value: Any) -> Any:
    """Plain value of an enum member; anything else passes through."""
    return value.value if isinstance(value, enum.Enum) else value


def utcnow() -> datetime:
    """Get current UTC datetime with timezone info. Always use this instead of datetime.now()."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is timezone-aware (UTC).

    SQLite stores datetimes without timezone info, so we need to make them
    aware before comparing with utcnow().
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO date or datetime from a form payload.

    Date-only values resolve to midnight UTC. Unparseable values yield None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return ensure_aware(parsed)


def week_start(moment: Optional[datetime] = None) -> date:
    """Monday (UTC) of the week containing `moment`."""
    moment = ensure_aware(moment) or utcnow()
    day = moment.astimezone(timezone.utc).date()
    return day - timedelta(days=day.weekday())


def round_money(value: float) -> float:
    """Round a currency amount to cents."""
    return round(float(value) + 0.0, 2)


def generate_unique_key() -> str:
    """Generate a unique random key."""
    return uuid.uuid4().hex


def _random_reference(length: int) -> str:
    return "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(length))


def generate_lead_number(service_type: str, now: Optional[datetime] = None) -> str:
    """Human-readable lead reference, e.g. MOV-250114-7K2Q."""
    now = now or utcnow()
    service_type = enum_value(service_type)
    prefix = SERVICE_PREFIXES.get(service_type, service_type[:3].upper())
    return f"{prefix}-{now.strftime('%y%m%d')}-{_random_reference(4)}"


def generate_partner_number(service_type: str, partner_type: str) -> str:
    """Partner reference, e.g. PTR-EXC-MOV-4F7K2Q."""
    service_type, partner_type = enum_value(service_type), enum_value(partner_type)
    tier = "EXC" if partner_type == "exclusive" else "BAS"
    service = SERVICE_PREFIXES.get(service_type, service_type[:3].upper())
    return f"PTR-{tier}-{service}-{_random_reference(6)}"


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    """Invoice reference, e.g. INV-202501-7K2Q9X."""
    now = now or utcnow()
    return f"INV-{now.strftime('%Y%m')}-{_random_reference(6)}"


class CircuitBreaker:
    """
    Simple circuit breaker for external service calls.

    States:
    - CLOSED: Normal operation, calls pass through
    - OPEN: Service is down, calls fail fast
    - HALF_OPEN: Testing if service is back
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Service name for logging.
            failure_threshold: Number of failures before opening circuit.
            recovery_timeout: Seconds to wait before trying again.
            half_open_max_calls: Max test calls in half-open state.
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self.state = self.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.half_open_calls = 0

    def can_execute(self) -> bool:
        """Check if a call can be made."""
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            if self.last_failure_time:
                elapsed = (utcnow() - self.last_failure_time).total_seconds()
                if elapsed >= self.recovery_timeout:
                    self.state = self.HALF_OPEN
                    self.half_open_calls = 0
                    LOGGER.info(f"Circuit breaker {self.name}: OPEN -> HALF_OPEN")
                    return True
            return False

        return self.half_open_calls < self.half_open_max_calls

    def record_success(self) -> None:
        """Record a successful call."""
        if self.state == self.HALF_OPEN:
            self.half_open_calls += 1
            if self.half_open_calls >= self.half_open_max_calls:
                self.state = self.CLOSED
                self.failure_count = 0
                LOGGER.info(f"Circuit breaker {self.name}: HALF_OPEN -> CLOSED")
        elif self.state == self.CLOSED:
            self.failure_count = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        self.failure_count += 1
        self.last_failure_time = utcnow()

        if self.state == self.HALF_OPEN:
            self.state = self.OPEN
            LOGGER.warning(f"Circuit breaker {self.name}: HALF_OPEN -> OPEN (failure in test)")
        elif self.failure_count >= self.failure_threshold:
            self.state = self.OPEN
            LOGGER.warning(f"Circuit breaker {self.name}: CLOSED -> OPEN (threshold reached)")


__all__ = [
    "enum_value",
    "utcnow",
    "ensure_aware",
    "parse_datetime",
    "week_start",
    "round_money",
    "generate_unique_key",
    "generate_lead_number",
    "generate_partner_number",
    "generate_invoice_number",
    "CircuitBreaker",
]
