"""
Managed backend — catalog, carts and checkout hosted by a remote platform.

    from commerceflex import managed as MP

    shop = MP.ManagedProvider(
        "acme",
        store_domain="acme.platform.test",
        storefront_token=public_token,
        admin_token=admin_token,
        webhook_secret=secret,
    )
    match await shop.checkout.create(cart.id):
        case Ok(session):
            redirect(session.target.url)
"""

from commerceflex.managed._adapter import ManagedProvider, CAPABILITIES
from commerceflex.managed._client import ManagedClient, Context, STOREFRONT_TOKEN, ADMIN_TOKEN
from commerceflex.managed._webhooks import TOPICS
from commerceflex.managed import _mapping as mapping

__all__ = (
    "ManagedProvider",
    "CAPABILITIES",
    "ManagedClient",
    "Context",
    "STOREFRONT_TOKEN",
    "ADMIN_TOKEN",
    "TOPICS",
    "mapping",
)
