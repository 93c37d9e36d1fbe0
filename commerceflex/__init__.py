"""
commerceflex — one commerce interface over a managed platform and a
self-hosted backend, selectable per tenant.

    from commerceflex import registry as R    # Tenant → adapter
    from commerceflex import model as M       # Canonical types
    from commerceflex import webhooks as W    # Verified, deduplicated events
    from commerceflex import migration as MG  # Managed → self-hosted
"""

from commerceflex import model
from commerceflex import provider
from commerceflex import cache
from commerceflex import saga
from commerceflex import idempotency
from commerceflex import selfhosted
from commerceflex import managed
from commerceflex import webhooks
from commerceflex import registry
from commerceflex import migration
from commerceflex._types import Clock, Lazy, utcnow
from commerceflex.settings import Settings

__version__ = "0.1.0"

__all__ = (
    "model",
    "provider",
    "cache",
    "saga",
    "idempotency",
    "selfhosted",
    "managed",
    "webhooks",
    "registry",
    "migration",
    "Clock",
    "Lazy",
    "utcnow",
    "Settings",
)
