"""
Self-hosted orders: reads, cancellation and refunds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, cast

from kungfu import Result, Ok, Error
from sqlalchemy import func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from commerceflex.idempotency import FAIL, Policy, fingerprint, idempotent
from commerceflex.model import (
    CommerceError,
    ConflictError,
    FinancialStatus,
    FulfillmentStatus,
    Money,
    NotFoundError,
    Order,
    Page,
    ProviderPermanentError,
    ValidationError,
    advance_financial,
)
from commerceflex.provider import guarded, ledger_error, read, writes
from commerceflex.selfhosted import _convert as convert
from commerceflex.selfhosted._context import (
    Context,
    check_page_size,
    decode_cursor,
    encode_cursor,
)
from commerceflex.selfhosted._tables import OrderRow

logger = logging.getLogger(__name__)

_REFUNDABLE = (FinancialStatus.PAID, FinancialStatus.PARTIALLY_REFUNDED)


async def load_order(session: AsyncSession, tenant_id: str, order_id: str) -> Order:
    row = await session.get(OrderRow, order_id)
    if row is None or row.tenant_id != tenant_id:
        raise NotFoundError(f"Order {order_id} not found", entity="order", id=order_id)
    return convert.order(row)


@dataclass(frozen=True, slots=True)
class _RefundRequest:
    order_id: str
    key: str
    amount: Money | None


class Orders:
    def __init__(self, ctx: Context) -> None:
        self._ctx = ctx
        # Same key with a different amount is rejected, never silently replayed
        self._refunds = (
            idempotent(self._refund_attempt)
            .key(lambda req: f"refund:{req.order_id}:{req.key}")
            .fingerprint(
                lambda req: fingerprint(
                    req.amount.amount if req.amount else None,
                    req.amount.currency if req.amount else None,
                )
            )
            .store(ctx.ledger)
            .policy(Policy().with_ttl(delta=ctx.options.ledger_ttl).with_on_pending(FAIL))
            .clock(ctx.clock)
            .build()
        )

    async def get(self, order_id: str) -> Result[Order, CommerceError]:
        return await read(self._ctx.retry, lambda: self._get(order_id))

    async def list(
        self, *, first: int = 50, after: str | None = None
    ) -> Result[Page[Order], CommerceError]:
        return await read(self._ctx.retry, lambda: self._page(first, after))

    async def cancel(
        self, order_id: str, *, reason: str | None = None
    ) -> Result[Order, CommerceError]:
        return await guarded(lambda: self._cancel(order_id, reason))

    async def refund(
        self,
        order_id: str,
        *,
        amount: Money | None = None,
        idempotency_key: str,
    ) -> Result[Order, CommerceError]:
        return await guarded(lambda: self._refund(order_id, amount, idempotency_key))

    # ─── reads ────────────────────────────────────────────────────────────────

    async def _get(self, order_id: str) -> Order:
        async with self._ctx.session() as session:
            return await load_order(session, self._ctx.tenant_id, order_id)

    async def _row(self, order_id: str) -> OrderRow:
        async with self._ctx.session() as session:
            row = await session.get(OrderRow, order_id)
        if row is None or row.tenant_id != self._ctx.tenant_id:
            raise NotFoundError(f"Order {order_id} not found", entity="order", id=order_id)
        return row

    async def _page(self, first: int, after: str | None) -> Page[Order]:
        check_page_size(first)
        scope = [OrderRow.tenant_id == self._ctx.tenant_id]
        async with self._ctx.session() as session:
            count = await session.scalar(select(func.count()).select_from(OrderRow).where(*scope))
            stmt = select(OrderRow).where(*scope).order_by(OrderRow.id).limit(first + 1)
            if after is not None:
                stmt = stmt.where(OrderRow.id > decode_cursor(after))
            rows = list(await session.scalars(stmt))

        more = len(rows) > first
        rows = rows[:first]
        return Page(
            items=tuple(convert.order(r) for r in rows),
            next_cursor=encode_cursor(rows[-1].id) if more else None,
            total=count,
        )

    async def _write(self, row: OrderRow, *guards: Any, **values: Any) -> Order:
        """CAS on the order row; ``guards`` are the state it was read in."""
        ctx = self._ctx
        async with ctx.transaction() as session:
            cursor = cast(
                CursorResult[Any],
                await session.execute(
                    update(OrderRow)
                    .where(OrderRow.id == row.id, OrderRow.tenant_id == ctx.tenant_id, *guards)
                    .values(updated_at=ctx.clock(), **values)
                ),
            )
            if cursor.rowcount != 1:
                raise ConflictError(f"Order {row.id} changed concurrently")
            return await load_order(session, ctx.tenant_id, row.id)

    # ─── cancel ───────────────────────────────────────────────────────────────

    @writes
    async def _cancel(self, order_id: str, reason: str | None) -> Order:
        ctx = self._ctx
        row = await self._row(order_id)
        if row.cancelled_at is not None:
            return convert.order(row)
        if row.fulfillment_status != FulfillmentStatus.UNFULFILLED.value:
            raise ProviderPermanentError(f"Order {row.number} is {row.fulfillment_status}; cannot cancel")

        current = FinancialStatus(row.financial_status)
        refunded = row.refunded
        match current:
            case FinancialStatus.AUTHORIZED:
                if row.payment_reference:
                    await ctx.processor.cancel(row.payment_reference, idempotency_key=f"{row.id}:void")
                new = FinancialStatus.VOIDED
            case FinancialStatus.PENDING:
                new = FinancialStatus.VOIDED
            case FinancialStatus.PAID | FinancialStatus.PARTIALLY_REFUNDED:
                outstanding = Money(row.total - row.refunded, row.currency)
                if outstanding.amount > 0 and row.payment_reference:
                    await ctx.processor.refund(
                        row.payment_reference, outstanding, idempotency_key=f"{row.id}:cancel-refund"
                    )
                new = FinancialStatus.REFUNDED
                refunded = row.total
            case _:
                new = current

        order = await self._write(
            row,
            OrderRow.cancelled_at.is_(None),
            OrderRow.financial_status == row.financial_status,
            financial_status=advance_financial(current, new).value,
            refunded=refunded,
            cancelled_at=ctx.clock(),
            cancel_reason=reason,
        )
        logger.info("Order %s cancelled (%s → %s)", row.number, current.value, new.value)
        return order

    # ─── refund ───────────────────────────────────────────────────────────────

    @writes
    async def _refund(self, order_id: str, amount: Money | None, key: str) -> Order:
        if not key or not key.strip():
            raise ValidationError("idempotency_key is required", field="idempotency_key")

        match await self._refunds.run(_RefundRequest(order_id, key, amount)):
            case Ok(_):
                return await self._get(order_id)
            case Error(err):
                raise ledger_error(err)

    async def _refund_attempt(self, req: _RefundRequest) -> Result[str, CommerceError]:
        return await guarded(lambda: self._apply_refund(req))

    async def _apply_refund(self, req: _RefundRequest) -> str:
        ctx = self._ctx
        row = await self._row(req.order_id)
        current = FinancialStatus(row.financial_status)
        if current not in _REFUNDABLE:
            raise ProviderPermanentError(f"Order {row.number} is {current.value}; nothing to refund")

        refundable = Money(row.total - row.refunded, row.currency)
        amount = req.amount if req.amount is not None else refundable
        if amount.currency != row.currency:
            raise ValidationError(
                f"Refund in {amount.currency} for an order in {row.currency}", field="amount"
            )
        if amount.amount <= 0:
            raise ValidationError("Refund amount must be positive", field="amount")
        if refundable < amount:
            raise ValidationError(f"At most {refundable} can be refunded", field="amount")
        if row.payment_reference is None:
            raise ProviderPermanentError(f"Order {row.number} has no payment to refund")

        refund = await ctx.processor.refund(
            row.payment_reference, amount, idempotency_key=f"{row.id}:{req.key}"
        )
        refunded = row.refunded + amount.amount
        new = (
            FinancialStatus.REFUNDED if refunded >= row.total else FinancialStatus.PARTIALLY_REFUNDED
        )
        await self._write(
            row,
            OrderRow.refunded == row.refunded,
            refunded=refunded,
            financial_status=advance_financial(current, new).value,
        )
        logger.info("Refunded %s on order %s (refund %s)", amount, row.number, refund.id)
        return refund.id

    async def record_refund(self, payment_reference: str, refunded_total: int) -> Order | None:
        """
        Bring an order in line with a processor-side refund total.
        Never lowers the refunded amount.
        """
        ctx = self._ctx
        async with ctx.session() as session:
            row = await session.scalar(
                select(OrderRow).where(
                    OrderRow.tenant_id == ctx.tenant_id,
                    OrderRow.payment_reference == payment_reference,
                )
            )
        if row is None:
            return None
        if refunded_total <= row.refunded:
            return convert.order(row)

        refunded = min(refunded_total, row.total)
        current = FinancialStatus(row.financial_status)
        new = (
            FinancialStatus.REFUNDED if refunded >= row.total else FinancialStatus.PARTIALLY_REFUNDED
        )
        return await self._write(
            row,
            OrderRow.refunded == row.refunded,
            refunded=refunded,
            financial_status=advance_financial(current, new).value,
        )


__all__ = ("Orders", "load_order")
