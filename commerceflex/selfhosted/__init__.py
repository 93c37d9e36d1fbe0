"""
Self-hosted backend — catalog, carts and checkout in a local SQL database,
payments through a card processor.

    from commerceflex import selfhosted as SH

    shop = SH.SelfHostedProvider(
        "acme",
        database=SH.Database("sqlite+aiosqlite:///acme.db"),
        processor=SH.HttpProcessor("https://api.processor.test/v1", api_key),
        webhook_secrets=[current_secret],
        options=SH.Options(currency="USD", tax_bps=825, shipping_flat=500),
    )
    await shop.create_all()
"""

from commerceflex.selfhosted._adapter import SelfHostedProvider, CAPABILITIES
from commerceflex.selfhosted._context import Context, Options
from commerceflex.selfhosted._database import Database
from commerceflex.selfhosted._importer import Importer
from commerceflex.selfhosted._processor import (
    CardProcessor,
    HttpProcessor,
    IntentStatus,
    PaymentIntent,
    Refund,
    parse_intent,
)
from commerceflex.selfhosted._subscriptions import next_billing
from commerceflex.selfhosted._tables import Base, CheckpointRow

__all__ = (
    "SelfHostedProvider",
    "CAPABILITIES",
    "Context",
    "Options",
    "Database",
    "Importer",
    "CardProcessor",
    "HttpProcessor",
    "IntentStatus",
    "PaymentIntent",
    "Refund",
    "parse_intent",
    "next_billing",
    "Base",
    "CheckpointRow",
)
