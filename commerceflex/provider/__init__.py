"""
Provider — the normalized interface every backend adapter implements.

    from commerceflex import provider as P

    async with registry.lease(tenant_id) as shop:
        if shop.supports(P.Capability.SUBSCRIPTIONS):
            ...
        match await shop.cart.add_line(cart.id, variant_id, 2, expected_version=cart.version):
            case Ok(cart): ...
            case Error(P.ConflictError()): ...  # refresh and retry
"""

from commerceflex.model import (
    CommerceError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PaymentDeclinedError,
    ProviderPermanentError,
    ProviderTransientError,
    ValidationError,
)
from commerceflex.provider._capability import Capability, ProviderKind
from commerceflex.provider._protocol import (
    CatalogOps,
    CartOps,
    CheckoutOps,
    OrderOps,
    CustomerOps,
    DiscountOps,
    WebhookOps,
    SubscriptionOps,
    Provider,
)
from commerceflex.provider._boundary import (
    guarded,
    ledger_error,
    RetryPolicy,
    NO_RETRY,
    retry_reads,
    read,
    check_page_size,
    WriteGate,
    writes,
)

__all__ = (
    "CommerceError",
    "ConfigurationError",
    "ConflictError",
    "NotFoundError",
    "PaymentDeclinedError",
    "ProviderPermanentError",
    "ProviderTransientError",
    "ValidationError",
    "Capability",
    "ProviderKind",
    "CatalogOps",
    "CartOps",
    "CheckoutOps",
    "OrderOps",
    "CustomerOps",
    "DiscountOps",
    "WebhookOps",
    "SubscriptionOps",
    "Provider",
    "guarded",
    "ledger_error",
    "RetryPolicy",
    "NO_RETRY",
    "retry_reads",
    "read",
    "check_page_size",
    "WriteGate",
    "writes",
)
