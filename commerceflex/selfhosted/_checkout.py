"""
Self-hosted checkout state machine.

    draft → collecting_shipping → calculating_tax → awaiting_payment
          → payment_processing → completed | failed | expired

Every transition is a compare-and-swap on ``(id, status, version)``. A live
session holds its cart through ``active_cart_id``; reaching a terminal state
clears it in the same statement, which unlocks the cart (or, on completion,
consumes it).
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any, cast

from kungfu import Result, Ok, Error
from sqlalchemy import case, delete, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError

from commerceflex import saga as S
from commerceflex.idempotency import WAIT, Policy, idempotent
from commerceflex.model import (
    Address,
    CheckoutClosedError,
    CheckoutSession,
    CheckoutStatus,
    CheckoutTarget,
    CommerceError,
    ConflictError,
    FinancialStatus,
    Money,
    NotFoundError,
    Order,
    PaymentDeclinedError,
    ProviderPermanentError,
    ProviderTransientError,
    TargetKind,
    ValidationError,
    allocate,
    classify,
    normalize_email,
)
from commerceflex.provider import guarded, ledger_error, read, writes
from commerceflex.selfhosted import _convert as convert
from commerceflex.selfhosted._cart import bump_version, cart_miss, load_cart
from commerceflex.selfhosted._context import Context, new_id
from commerceflex.selfhosted._discounts import release, reserve
from commerceflex.selfhosted._orders import load_order
from commerceflex.selfhosted._processor import IntentStatus, PaymentIntent
from commerceflex.selfhosted._tables import (
    CartLineRow,
    CartRow,
    CheckoutSessionRow,
    CustomerRow,
    OrderRow,
    VariantRow,
)

logger = logging.getLogger(__name__)

DRAFT = CheckoutStatus.DRAFT
COLLECTING_SHIPPING = CheckoutStatus.COLLECTING_SHIPPING
CALCULATING_TAX = CheckoutStatus.CALCULATING_TAX
AWAITING_PAYMENT = CheckoutStatus.AWAITING_PAYMENT
PAYMENT_PROCESSING = CheckoutStatus.PAYMENT_PROCESSING
COMPLETED = CheckoutStatus.COMPLETED
FAILED = CheckoutStatus.FAILED
EXPIRED = CheckoutStatus.EXPIRED

LIVE = tuple(s.value for s in CheckoutStatus if not s.is_terminal)
PAYABLE = (AWAITING_PAYMENT, PAYMENT_PROCESSING)


@dataclass(frozen=True, slots=True)
class _Completion:
    session_id: str
    key: str
    payment_method: str | None


def _financial(intent: PaymentIntent) -> FinancialStatus:
    if intent.status is IntentStatus.SUCCEEDED:
        return FinancialStatus.PAID
    return FinancialStatus.AUTHORIZED


def _unconfirmed(intent: PaymentIntent) -> bool:
    """The processor never saw a confirm for this intent."""
    return intent.status is IntentStatus.REQUIRES_CONFIRMATION or (
        intent.status is IntentStatus.REQUIRES_PAYMENT_METHOD and not intent.declined
    )


def _terminal_error(row: CheckoutSessionRow) -> CommerceError:
    if row.status == COMPLETED.value:
        return ProviderPermanentError(f"Checkout {row.id} already completed as order {row.order_id}")
    return CheckoutClosedError(
        f"Checkout {row.id} is {row.status}; start a new checkout", session_id=row.id
    )


def _order_number(order_id: str) -> str:
    return "SH-" + order_id.replace("-", "")[:8].upper()


# ═══════════════════════════════════════════════════════════════════════════════
# Checkout
# ═══════════════════════════════════════════════════════════════════════════════


class Checkout:
    def __init__(self, ctx: Context) -> None:
        self._ctx = ctx
        # One processor confirmation per (session, caller key); duplicates wait
        # for the first and replay its order id
        self._completion = (
            idempotent(self._complete_attempt)
            .key(lambda req: f"complete:{req.session_id}:{req.key}")
            .store(ctx.ledger)
            .policy(
                Policy()
                .with_ttl(delta=ctx.options.ledger_ttl)
                .with_pending_ttl(delta=ctx.options.confirm_timeout)
                .with_on_pending(WAIT)
                .with_wait_timeout(seconds=ctx.options.completion_wait.total_seconds())
            )
            .clock(ctx.clock)
            .build()
        )

    # ─── public ───────────────────────────────────────────────────────────────

    async def create(self, cart_id: str) -> Result[CheckoutSession, CommerceError]:
        return await guarded(lambda: self._create(cart_id))

    async def get_target(self, session_id: str) -> Result[CheckoutTarget, CommerceError]:
        return await read(self._ctx.retry, lambda: self._target(session_id))

    async def advance(
        self,
        session_id: str,
        *,
        expected_version: int | None = None,
        email: str | None = None,
        shipping_address: Address | None = None,
    ) -> Result[CheckoutSession, CommerceError]:
        return await guarded(
            lambda: self._advance(session_id, expected_version, email, shipping_address)
        )

    async def complete(
        self,
        session_id: str,
        *,
        idempotency_key: str,
        payment_method: str | None = None,
    ) -> Result[Order, CommerceError]:
        return await guarded(lambda: self._complete(session_id, idempotency_key, payment_method))

    async def get_status(self, session_id: str) -> Result[CheckoutSession, CommerceError]:
        return await read(self._ctx.retry, lambda: self._status(session_id))

    async def expire_stale(self) -> Result[int, CommerceError]:
        return await guarded(self._expire_stale)

    # ─── loading ──────────────────────────────────────────────────────────────

    async def row(self, session_id: str) -> CheckoutSessionRow:
        async with self._ctx.session() as session:
            row = await session.get(CheckoutSessionRow, session_id)
        if row is None or row.tenant_id != self._ctx.tenant_id:
            raise NotFoundError(
                f"Checkout {session_id} not found", entity="checkout_session", id=session_id
            )
        return row

    async def by_reference(self, payment_reference: str) -> CheckoutSessionRow | None:
        async with self._ctx.session() as session:
            return await session.scalar(
                select(CheckoutSessionRow).where(
                    CheckoutSessionRow.tenant_id == self._ctx.tenant_id,
                    CheckoutSessionRow.payment_reference == payment_reference,
                )
            )

    async def _current(self, session_id: str) -> CheckoutSessionRow:
        """Session row with lazy expiry applied."""
        row = await self.row(session_id)
        try:
            settled = await self._settle_overdue(row)
        except CommerceError as e:
            logger.warning("Could not settle overdue checkout %s: %s", session_id, e)
            return row
        return await self.row(session_id) if settled is not None else row

    async def _status(self, session_id: str) -> CheckoutSession:
        return convert.checkout_session(await self._current(session_id))

    async def _target(self, session_id: str) -> CheckoutTarget:
        row = await self._current(session_id)
        if row.status in (FAILED.value, EXPIRED.value, COMPLETED.value):
            raise _terminal_error(row)
        if row.status not in (AWAITING_PAYMENT.value, PAYMENT_PROCESSING.value):
            raise ProviderPermanentError(
                f"Checkout {session_id} is {row.status}; no payment target until awaiting_payment"
            )
        return CheckoutTarget(kind=TargetKind.EMBED, client_secret=row.client_secret)

    # ─── create ───────────────────────────────────────────────────────────────

    @writes
    async def _create(self, cart_id: str) -> CheckoutSession:
        ctx = self._ctx
        tenant = ctx.tenant_id
        await self.sweep_cart(cart_id)

        now = ctx.clock()
        try:
            async with ctx.transaction() as session:
                if not await bump_version(session, tenant, cart_id, None, now):
                    raise await cart_miss(session, tenant, cart_id)
                cart = await load_cart(session, tenant, cart_id, now)
                if not cart.lines:
                    raise ValidationError(f"Cart {cart_id} is empty", field="cart_id")
                row = CheckoutSessionRow(
                    id=new_id(),
                    tenant_id=tenant,
                    cart_id=cart_id,
                    active_cart_id=cart_id,
                    status=DRAFT.value,
                    version=0,
                    currency=cart.currency,
                    lines=[convert.snapshot_line(line) for line in cart.lines],
                    discount_codes=list(cart.discount_codes),
                    discount_reserved=False,
                    subtotal=cart.subtotal.amount,
                    discount=cart.total_discount.amount,
                    shipping=0,
                    tax=0,
                    total=cart.total.amount,
                    expires_at=now + ctx.options.checkout_ttl,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                await session.flush()
        except IntegrityError:
            raise ConflictError(f"Cart {cart_id} already has an active checkout") from None

        logger.info("Checkout %s opened for cart %s", row.id, cart_id)
        return convert.checkout_session(row)

    # ─── advance ──────────────────────────────────────────────────────────────

    @writes
    async def _advance(
        self,
        session_id: str,
        expected_version: int | None,
        email: str | None,
        shipping_address: Address | None,
    ) -> CheckoutSession:
        row = await self._current(session_id)
        status = CheckoutStatus(row.status)
        if status.is_terminal:
            raise _terminal_error(row)
        if expected_version is not None and expected_version != row.version:
            raise ConflictError(
                f"Checkout {session_id} is at version {row.version}",
                current_version=row.version,
            )

        match status:
            case CheckoutStatus.DRAFT:
                if email is None:
                    raise ValidationError("email is required", field="email")
                return await self._step(row, COLLECTING_SHIPPING, email=normalize_email(email))
            case CheckoutStatus.COLLECTING_SHIPPING:
                return await self._step(row, CALCULATING_TAX, **self._price(row, shipping_address))
            case CheckoutStatus.CALCULATING_TAX:
                return await self._open_payment(row)
            case _:
                raise ProviderPermanentError(
                    f"Checkout {session_id} is {status.value}; call complete to pay"
                )

    def _price(self, row: CheckoutSessionRow, address: Address | None) -> dict[str, Any]:
        if address is None:
            raise ValidationError("shipping_address is required", field="shipping_address")
        if not (address.line1 and address.city and address.country_code):
            raise ValidationError(
                "Shipping address needs line1, city and country_code", field="shipping_address"
            )
        opts = self._ctx.options
        cur = row.currency
        merchandise = Money(row.subtotal - row.discount, cur)
        shipping = Money(opts.shipping_flat, cur)
        if opts.free_shipping_over is not None and merchandise.amount >= opts.free_shipping_over:
            shipping = Money.zero(cur)
        tax = (merchandise + shipping).basis_points(opts.tax_bps)
        return {
            "shipping_address": address.to_dict(),
            "shipping": shipping.amount,
            "tax": tax.amount,
            "total": (merchandise + shipping + tax).amount,
        }

    async def _open_payment(self, row: CheckoutSessionRow) -> CheckoutSession:
        ctx = self._ctx
        tenant = ctx.tenant_id
        codes = list(row.discount_codes or [])
        amount = Money(row.total, row.currency)

        async def reserve_codes() -> list[str]:
            async with ctx.transaction() as session:
                await reserve(session, tenant, codes)
            return codes

        async def release_codes(reserved: list[str]) -> None:
            async with ctx.transaction() as session:
                await release(session, tenant, reserved)

        async def open_intent() -> PaymentIntent | None:
            if amount.amount == 0:
                return None
            return await ctx.processor.create_intent(
                amount,
                idempotency_key=f"{row.id}:intent",
                metadata={"checkout_session_id": row.id, "tenant_id": tenant},
            )

        async def cancel_intent(intent: PaymentIntent | None) -> None:
            if intent is None:
                return
            # The intent key is per session, so a concurrent advance that won
            # the transition holds this very intent
            if (await self.row(row.id)).payment_reference == intent.id:
                logger.info("Keeping intent %s; checkout %s recorded it", intent.id, row.id)
                return
            await ctx.processor.cancel(intent.id, idempotency_key=f"{row.id}:intent-cancel")

        async def record(intent: PaymentIntent | None) -> CheckoutSession:
            return await self._step(
                row,
                AWAITING_PAYMENT,
                payment_reference=intent.id if intent else None,
                client_secret=intent.client_secret if intent else None,
                discount_reserved=bool(codes),
            )

        flow = (
            S.from_async(reserve_codes, on_error=classify, compensate=release_codes, name="reserve_discounts")
            .then(lambda _: S.from_async(open_intent, on_error=classify, compensate=cancel_intent, name="payment_intent"))
            .then(lambda intent: S.from_async(lambda: record(intent), on_error=classify, name="awaiting_payment"))
        )

        match await S.run(flow):
            case Ok(done):
                return done.value
            case Error(failure):
                if failure.failed_step == "reserve_discounts":
                    # The snapshot can never be paid as priced; unless another
                    # writer moved the session on meanwhile
                    await self._end(
                        row.id,
                        FAILED,
                        (CALCULATING_TAX,),
                        version=row.version,
                        failure_reason=failure.error.message,
                    )
                raise failure.error

    async def _step(
        self, row: CheckoutSessionRow, to: CheckoutStatus, **values: Any
    ) -> CheckoutSession:
        ctx = self._ctx
        async with ctx.transaction() as session:
            cursor = cast(
                CursorResult[Any],
                await session.execute(
                    update(CheckoutSessionRow)
                    .where(
                        CheckoutSessionRow.id == row.id,
                        CheckoutSessionRow.tenant_id == ctx.tenant_id,
                        CheckoutSessionRow.status == row.status,
                        CheckoutSessionRow.version == row.version,
                    )
                    .values(
                        status=to.value,
                        version=CheckoutSessionRow.version + 1,
                        updated_at=ctx.clock(),
                        **values,
                    )
                ),
            )
            if cursor.rowcount != 1:
                current = await session.get(CheckoutSessionRow, row.id)
                logger.info("Checkout %s lost a %s transition", row.id, to.value)
                raise ConflictError(
                    f"Checkout {row.id} changed concurrently",
                    current_version=current.version if current else None,
                )
            fresh = await session.get(CheckoutSessionRow, row.id)
            assert fresh is not None
        return convert.checkout_session(fresh)

    # ─── complete ─────────────────────────────────────────────────────────────

    @writes
    async def _complete(
        self, session_id: str, idempotency_key: str, payment_method: str | None
    ) -> Order:
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("idempotency_key is required", field="idempotency_key")

        match await self._completion.run(_Completion(session_id, idempotency_key, payment_method)):
            case Ok(done):
                return await self._order(done.value)
            case Error(err):
                raise ledger_error(err)

    async def _complete_attempt(self, req: _Completion) -> Result[str, CommerceError]:
        return await guarded(lambda: self._confirm(req))

    async def _confirm(self, req: _Completion) -> str:
        """Drive one session to a terminal payment outcome; returns the order id."""
        ctx = self._ctx
        row = await self._current(req.session_id)

        match CheckoutStatus(row.status):
            case CheckoutStatus.COMPLETED:
                assert row.order_id is not None
                return row.order_id
            case CheckoutStatus.FAILED:
                raise PaymentDeclinedError(row.failure_reason or "Payment was declined")
            case CheckoutStatus.EXPIRED:
                raise _terminal_error(row)
            case CheckoutStatus.AWAITING_PAYMENT:
                if row.payment_reference is None:
                    return await self.settle_completed(row.id, FinancialStatus.PAID)
                try:
                    await self._step(row, PAYMENT_PROCESSING, confirm_dispatched_at=ctx.clock())
                except ConflictError:
                    # A webhook may have settled the session in between
                    current = await self.row(row.id)
                    if current.status == COMPLETED.value and current.order_id:
                        return current.order_id
                    raise
            case CheckoutStatus.PAYMENT_PROCESSING:
                # The processor replays the first confirm response for our key,
                # so the live intent decides whether to dispatch again
                assert row.payment_reference is not None
                live = await ctx.processor.retrieve(row.payment_reference)
                if not _unconfirmed(live):
                    return await self._settle_intent(row.id, live)
                logger.info("Re-confirming checkout %s", row.id)
            case status:
                raise ProviderPermanentError(
                    f"Checkout {row.id} is {status.value}; advance to awaiting_payment first"
                )

        assert row.payment_reference is not None
        try:
            intent = await ctx.processor.confirm(
                row.payment_reference, idempotency_key=row.id, payment_method=req.payment_method
            )
        except PaymentDeclinedError as e:
            await self.settle_failed(row.id, e.message)
            raise
        return await self._settle_intent(row.id, intent)

    async def _settle_intent(self, session_id: str, intent: PaymentIntent) -> str:
        if intent.authorized:
            return await self.settle_completed(session_id, _financial(intent))
        if intent.declined:
            reason = intent.failure_message or "Payment was declined"
            await self.settle_failed(session_id, reason)
            raise PaymentDeclinedError(reason, decline_code=intent.decline_code)
        raise ProviderTransientError(
            f"Payment for checkout {session_id} is {intent.status.value}; retry to check again"
        )

    async def _order(self, order_id: str) -> Order:
        async with self._ctx.session() as session:
            return await load_order(session, self._ctx.tenant_id, order_id)

    # ─── terminal transitions ─────────────────────────────────────────────────

    async def settle_completed(self, session_id: str, financial: FinancialStatus) -> str:
        """
        Complete a payable session and create its order in one transaction.

        A session that some other writer already completed yields that
        order; any other terminal state is a conflict.
        """
        ctx = self._ctx
        tenant = ctx.tenant_id
        now = ctx.clock()
        order_id = new_id()

        async with ctx.transaction() as session:
            cursor = cast(
                CursorResult[Any],
                await session.execute(
                    update(CheckoutSessionRow)
                    .where(
                        CheckoutSessionRow.id == session_id,
                        CheckoutSessionRow.tenant_id == tenant,
                        CheckoutSessionRow.status.in_([s.value for s in PAYABLE]),
                    )
                    .values(
                        status=COMPLETED.value,
                        active_cart_id=None,
                        order_id=order_id,
                        version=CheckoutSessionRow.version + 1,
                        updated_at=now,
                    )
                ),
            )
            if cursor.rowcount != 1:
                current = await session.get(CheckoutSessionRow, session_id)
                if current is not None and current.status == COMPLETED.value and current.order_id:
                    return current.order_id
                raise ConflictError(
                    f"Checkout {session_id} is {current.status if current else 'missing'}"
                )

            row = await session.get(CheckoutSessionRow, session_id)
            assert row is not None
            customer_id = None
            if row.email:
                customer_id = await session.scalar(
                    select(CustomerRow.id).where(
                        CustomerRow.tenant_id == tenant, CustomerRow.email == row.email
                    )
                )
            session.add(self._order_row(row, order_id, financial, customer_id))

            await session.execute(delete(CartLineRow).where(CartLineRow.cart_id == row.cart_id))
            await session.execute(
                delete(CartRow).where(CartRow.id == row.cart_id, CartRow.tenant_id == tenant)
            )
            for line in row.lines:
                qty = int(line["quantity"])
                await session.execute(
                    update(VariantRow)
                    .where(
                        VariantRow.id == line["variant_id"],
                        VariantRow.tenant_id == tenant,
                        VariantRow.inventory.is_not(None),
                    )
                    .values(
                        inventory=case(
                            (VariantRow.inventory > qty, VariantRow.inventory - qty), else_=0
                        )
                    )
                )

        logger.info("Checkout %s completed as order %s (%s)", session_id, order_id, financial.value)
        return order_id

    def _order_row(
        self,
        row: CheckoutSessionRow,
        order_id: str,
        financial: FinancialStatus,
        customer_id: str | None,
    ) -> OrderRow:
        cur = row.currency
        shares = allocate(
            Money(row.discount, cur),
            [int(line["unit_price"]) * int(line["quantity"]) for line in row.lines],
        )
        items = [
            {
                "id": new_id(),
                "product_id": line.get("product_id"),
                "variant_id": line.get("variant_id"),
                "title": line.get("title") or "",
                "sku": line.get("sku"),
                "quantity": int(line["quantity"]),
                "unit_price": int(line["unit_price"]),
                "discount": share.amount,
            }
            for line, share in zip(row.lines, shares, strict=True)
        ]
        now = self._ctx.clock()
        return OrderRow(
            id=order_id,
            tenant_id=row.tenant_id,
            number=_order_number(order_id),
            currency=cur,
            line_items=items,
            subtotal=row.subtotal,
            discount=row.discount,
            shipping=row.shipping,
            tax=row.tax,
            total=row.total,
            refunded=0,
            financial_status=financial.value,
            fulfillment_status="unfulfilled",
            email=row.email,
            customer_id=customer_id,
            checkout_session_id=row.id,
            payment_reference=row.payment_reference,
            created_at=now,
            updated_at=now,
        )

    async def settle_failed(self, session_id: str, reason: str) -> bool:
        return await self._end(
            session_id,
            FAILED,
            (CALCULATING_TAX, AWAITING_PAYMENT, PAYMENT_PROCESSING),
            failure_reason=reason,
        )

    async def _end(
        self,
        session_id: str,
        to: CheckoutStatus,
        from_: Collection[CheckoutStatus],
        *,
        version: int | None = None,
        **values: Any,
    ) -> bool:
        """CAS into a non-completed terminal state; frees the cart and any reservation."""
        ctx = self._ctx
        guard = [] if version is None else [CheckoutSessionRow.version == version]
        async with ctx.transaction() as session:
            cursor = cast(
                CursorResult[Any],
                await session.execute(
                    update(CheckoutSessionRow)
                    .where(
                        CheckoutSessionRow.id == session_id,
                        CheckoutSessionRow.tenant_id == ctx.tenant_id,
                        CheckoutSessionRow.status.in_([s.value for s in from_]),
                        *guard,
                    )
                    .values(
                        status=to.value,
                        active_cart_id=None,
                        version=CheckoutSessionRow.version + 1,
                        updated_at=ctx.clock(),
                        **values,
                    )
                ),
            )
            if cursor.rowcount != 1:
                return False
            row = await session.get(CheckoutSessionRow, session_id)
            assert row is not None
            if row.discount_reserved:
                await release(session, ctx.tenant_id, row.discount_codes or [])
                row.discount_reserved = False

        logger.info("Checkout %s is now %s", session_id, to.value)
        return True

    # ─── expiry ───────────────────────────────────────────────────────────────

    async def _settle_overdue(self, row: CheckoutSessionRow) -> CheckoutStatus | None:
        """
        Resolve a session past ``expires_at``. Returns the state it moved to,
        or None when it stays as it is.

        A dispatched confirmation is never abandoned blind: the intent is
        asked first, and an unresolved one is only expired after
        ``confirm_timeout``.
        """
        ctx = self._ctx
        now = ctx.clock()
        status = CheckoutStatus(row.status)
        if status.is_terminal or now < row.expires_at:
            return None

        intent: PaymentIntent | None = None
        if row.payment_reference is not None:
            intent = await ctx.processor.retrieve(row.payment_reference)
            if intent.authorized:
                await self.settle_completed(row.id, _financial(intent))
                return COMPLETED

        if status is PAYMENT_PROCESSING and intent is not None and not intent.declined:
            dispatched = row.confirm_dispatched_at or row.updated_at
            if now < dispatched + ctx.options.confirm_timeout:
                return None

        if not await self._end(row.id, EXPIRED, (status,), failure_reason="checkout expired"):
            return None

        if intent is not None and intent.status is not IntentStatus.CANCELED:
            try:
                await ctx.processor.cancel(intent.id, idempotency_key=f"{row.id}:cancel")
            except CommerceError as e:
                logger.warning("Could not cancel intent %s of expired checkout %s: %s", intent.id, row.id, e)
        return EXPIRED

    async def _overdue(self, *clauses: Any) -> list[CheckoutSessionRow]:
        ctx = self._ctx
        async with ctx.session() as session:
            rows = await session.scalars(
                select(CheckoutSessionRow).where(
                    CheckoutSessionRow.tenant_id == ctx.tenant_id,
                    CheckoutSessionRow.status.in_(LIVE),
                    CheckoutSessionRow.expires_at <= ctx.clock(),
                    *clauses,
                )
            )
            return list(rows)

    async def sweep_cart(self, cart_id: str) -> bool:
        """Settle overdue sessions holding ``cart_id``; True when any moved."""
        moved = False
        for row in await self._overdue(CheckoutSessionRow.cart_id == cart_id):
            if await self._settle_overdue(row) is not None:
                moved = True
        return moved

    async def _expire_stale(self) -> int:
        expired = 0
        for row in await self._overdue():
            try:
                if await self._settle_overdue(row) is EXPIRED:
                    expired += 1
            except CommerceError as e:
                logger.warning("Could not settle overdue checkout %s: %s", row.id, e)
        if expired:
            logger.info("Expired %d checkout sessions for tenant %s", expired, self._ctx.tenant_id)
        return expired


__all__ = ("Checkout",)
