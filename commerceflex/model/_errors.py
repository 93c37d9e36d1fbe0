"""
Typed commerce errors.

Raised inside adapters, returned as ``kungfu.Error`` at every public
method boundary. Each kind carries the recovery a storefront should offer.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from sqlalchemy.exc import DBAPIError, OperationalError


# ═══════════════════════════════════════════════════════════════════════════════
# Recovery — what the buyer is told
# ═══════════════════════════════════════════════════════════════════════════════


class Recovery(Enum):
    """User-visible outcome of a failed checkout-path call."""

    RETRY_STEP = "retry_step"
    NEW_CHECKOUT = "new_checkout"
    CONTACT_SUPPORT = "contact_support"


class ErrorKind(Enum):
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    PAYMENT_DECLINED = "payment_declined"
    WEBHOOK_VERIFICATION = "webhook_verification"
    MIGRATION_INTEGRITY = "migration_integrity"


# ═══════════════════════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(eq=False)
class CommerceError(Exception):
    message: str

    kind: ClassVar[ErrorKind] = ErrorKind.PERMANENT
    recovery: ClassVar[Recovery] = Recovery.CONTACT_SUPPORT
    retryable: ClassVar[bool] = False

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


# ═══════════════════════════════════════════════════════════════════════════════
# Kinds
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(eq=False)
class ConfigurationError(CommerceError):
    """Missing or invalid backend credentials for a tenant."""

    tenant_id: str | None = None

    kind: ClassVar[ErrorKind] = ErrorKind.CONFIGURATION


@dataclass(eq=False)
class ValidationError(CommerceError):
    """Malformed input. Never retried."""

    field: str | None = None

    kind: ClassVar[ErrorKind] = ErrorKind.VALIDATION
    recovery: ClassVar[Recovery] = Recovery.RETRY_STEP


@dataclass(eq=False)
class NotFoundError(CommerceError):
    entity: str = ""
    id: str = ""

    kind: ClassVar[ErrorKind] = ErrorKind.NOT_FOUND
    recovery: ClassVar[Recovery] = Recovery.NEW_CHECKOUT


@dataclass(eq=False)
class ConflictError(CommerceError):
    """Stale version, an already active session, or a concurrent duplicate."""

    current_version: int | None = None

    kind: ClassVar[ErrorKind] = ErrorKind.CONFLICT
    recovery: ClassVar[Recovery] = Recovery.RETRY_STEP


@dataclass(eq=False)
class ProviderTransientError(CommerceError):
    """Network failure, timeout or 5xx from a backend."""

    status_code: int | None = None

    kind: ClassVar[ErrorKind] = ErrorKind.TRANSIENT
    recovery: ClassVar[Recovery] = Recovery.RETRY_STEP
    retryable: ClassVar[bool] = True


@dataclass(eq=False)
class ProviderPermanentError(CommerceError):
    """Backend rejected the call because of state (e.g. insufficient inventory)."""

    status_code: int | None = None

    kind: ClassVar[ErrorKind] = ErrorKind.PERMANENT


@dataclass(eq=False)
class CheckoutClosedError(ProviderPermanentError):
    """The session exists but failed or expired; only a new checkout can proceed."""

    session_id: str = ""

    recovery: ClassVar[Recovery] = Recovery.NEW_CHECKOUT


@dataclass(eq=False)
class PaymentDeclinedError(CommerceError):
    decline_code: str | None = None

    kind: ClassVar[ErrorKind] = ErrorKind.PAYMENT_DECLINED
    recovery: ClassVar[Recovery] = Recovery.NEW_CHECKOUT


@dataclass(eq=False)
class WebhookVerificationError(CommerceError):
    kind: ClassVar[ErrorKind] = ErrorKind.WEBHOOK_VERIFICATION


@dataclass(eq=False)
class MigrationIntegrityError(CommerceError):
    """Counts or sampled fields differ between source and destination."""

    mismatches: tuple[str, ...] = ()

    kind: ClassVar[ErrorKind] = ErrorKind.MIGRATION_INTEGRITY


# ═══════════════════════════════════════════════════════════════════════════════
# Boundary classification
# ═══════════════════════════════════════════════════════════════════════════════


def classify(exc: Exception) -> CommerceError:
    """
    Map any exception escaping an adapter to a typed error.

    Used as ``on_error`` for ``L.catching_async`` at method boundaries.
    """
    if isinstance(exc, CommerceError):
        return exc
    # Lost connections and "database is locked" clear up on their own
    if isinstance(exc, OperationalError) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    ):
        return ProviderTransientError(f"{type(exc).__name__}: {exc.orig or exc}")
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return ProviderTransientError(f"{type(exc).__name__}: {exc}")
    return ProviderPermanentError(f"{type(exc).__name__}: {exc}")


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Recovery",
    "ErrorKind",
    "CommerceError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ProviderTransientError",
    "ProviderPermanentError",
    "CheckoutClosedError",
    "PaymentDeclinedError",
    "WebhookVerificationError",
    "MigrationIntegrityError",
    "classify",
)
