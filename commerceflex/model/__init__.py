"""
Model — canonical, backend-agnostic commerce types.

    from commerceflex import model as M

    line = M.CartLine("l1", "p1", "v1", 2, M.Money(1500, "USD"))
    cart = M.Cart.priced(id="c1", currency="USD", lines=[line])
    assert cart.subtotal == M.Money(3000, "USD")
"""

from commerceflex.model._errors import (
    Recovery,
    ErrorKind,
    CommerceError,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    ConflictError,
    ProviderTransientError,
    ProviderPermanentError,
    CheckoutClosedError,
    PaymentDeclinedError,
    WebhookVerificationError,
    MigrationIntegrityError,
    classify,
)
from commerceflex.model._money import (
    Money,
    exponent,
    check_currency,
    round_half_even,
    total,
    allocate,
)
from commerceflex.model._catalog import (
    Page,
    ProductStatus,
    Variant,
    Product,
    Address,
    Customer,
    CustomerInput,
    normalize_email,
)
from commerceflex.model._cart import (
    DiscountKind,
    DiscountCode,
    normalize_code,
    CartLine,
    CartTotals,
    Cart,
)
from commerceflex.model._checkout import (
    CheckoutStatus,
    TERMINAL,
    NEXT_STEP,
    can_transition,
    TargetKind,
    CheckoutTarget,
    CheckoutTotals,
    CheckoutSession,
    FinancialStatus,
    FulfillmentStatus,
    advance_financial,
    OrderLineItem,
    Order,
)
from commerceflex.model._events import (
    EventType,
    WebhookEvent,
    Delivery,
    SubscriptionStatus,
    BillingInterval,
    Subscription,
)

__all__ = (
    # Errors
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
    # Money
    "Money",
    "exponent",
    "check_currency",
    "round_half_even",
    "total",
    "allocate",
    # Catalog
    "Page",
    "ProductStatus",
    "Variant",
    "Product",
    "Address",
    "Customer",
    "CustomerInput",
    "normalize_email",
    # Cart
    "DiscountKind",
    "DiscountCode",
    "normalize_code",
    "CartLine",
    "CartTotals",
    "Cart",
    # Checkout / Order
    "CheckoutStatus",
    "TERMINAL",
    "NEXT_STEP",
    "can_transition",
    "TargetKind",
    "CheckoutTarget",
    "CheckoutTotals",
    "CheckoutSession",
    "FinancialStatus",
    "FulfillmentStatus",
    "advance_financial",
    "OrderLineItem",
    "Order",
    # Events
    "EventType",
    "WebhookEvent",
    "Delivery",
    "SubscriptionStatus",
    "BillingInterval",
    "Subscription",
)
