"""
Idempotency — ledger-backed exactly-once execution via nodnod graphs.

    from commerceflex import idempotency as I

    executor = (
        I.idempotent(confirm_payment)
        .key(lambda req: f"complete:{req.session_id}:{req.key}")
        .store(I.SQLAlchemyStore(sessions, LedgerTable, dialect="sqlite"))
        .policy(I.Policy().with_ttl(hours=24).with_on_pending(I.WAIT))
        .build()
    )
    result = await executor.run(request)

Used for checkout completion (WAIT: a double submit returns the same
order), refunds (fingerprinted: same key with another amount is rejected)
and webhook deliveries (FAIL: a concurrent duplicate is told to retry).
"""

from commerceflex.idempotency._types import (
    RecordState,
    LedgerRecord,
    IdempotencyResult,
    IdempotencyError,
    IdempotencyErrorKind,
    StoreError,
)
from commerceflex.idempotency._store import (
    Store,
    StoreAny,
    MemoryStore,
)
from commerceflex.idempotency._sqlalchemy import (
    IdempotencyMixin,
    IdempotencyStatus,
    SQLAlchemyStore,
)
from commerceflex.idempotency._policy import (
    Policy,
    OnPending,
    WAIT,
    FAIL,
)
from commerceflex.idempotency._graph import (
    LedgerSpec,
    run_idempotent,
)
from commerceflex.idempotency._builder import (
    Codec,
    Idempotent,
    IdempotentExecutor,
    idempotent,
    fingerprint,
)

__all__ = (
    "RecordState",
    "LedgerRecord",
    "IdempotencyResult",
    "IdempotencyError",
    "IdempotencyErrorKind",
    "StoreError",
    "Store",
    "StoreAny",
    "MemoryStore",
    "IdempotencyMixin",
    "IdempotencyStatus",
    "SQLAlchemyStore",
    "Policy",
    "OnPending",
    "WAIT",
    "FAIL",
    "LedgerSpec",
    "run_idempotent",
    "Codec",
    "Idempotent",
    "IdempotentExecutor",
    "idempotent",
    "fingerprint",
)
