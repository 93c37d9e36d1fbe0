"""
Webhooks — verified, deduplicated, backend-independent events.

    from commerceflex import webhooks as W

    ledger = W.EventLedger("sqlite+aiosqlite:///webhooks.db")
    normalizer = W.WebhookNormalizer(registry, sink, ledger.store)

    match await normalizer.handle(tenant_id, headers, body):
        case Ok(outcome) if outcome.duplicate: ...   # already applied
        case Ok(outcome): ...
        case Error(W.WebhookVerificationError()): ...  # 401
"""

from commerceflex.model import Delivery, EventType, WebhookEvent, WebhookVerificationError
from commerceflex.webhooks._signatures import (
    header,
    sign_managed,
    ManagedVerifier,
    sign_processor,
    processor_header,
    ProcessorVerifier,
)
from commerceflex.webhooks._sink import EventSink, MemorySink
from commerceflex.webhooks._ledger import LedgerBase, SeenEventRow, EventLedger
from commerceflex.webhooks._normalizer import (
    Resolver,
    Disposition,
    Outcome,
    WebhookNormalizer,
    dedupe_key,
)

__all__ = (
    "Delivery",
    "EventType",
    "WebhookEvent",
    "WebhookVerificationError",
    "header",
    "sign_managed",
    "ManagedVerifier",
    "sign_processor",
    "processor_header",
    "ProcessorVerifier",
    "EventSink",
    "MemorySink",
    "LedgerBase",
    "SeenEventRow",
    "EventLedger",
    "Resolver",
    "Disposition",
    "Outcome",
    "WebhookNormalizer",
    "dedupe_key",
)
