"""
Self-hosted subscriptions.

    active ⇄ paused
    active | paused → cancelled (final)

Billing itself is out of scope here; ``next_billing_at`` is kept so a
scheduler can pick due subscriptions up.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta

from kungfu import Result
from sqlalchemy.ext.asyncio import AsyncSession

from commerceflex.model import (
    BillingInterval,
    CommerceError,
    NotFoundError,
    ProviderPermanentError,
    Subscription,
    SubscriptionStatus,
    ValidationError,
)
from commerceflex.provider import guarded, read
from commerceflex.selfhosted import _convert as convert
from commerceflex.selfhosted._cart import variant_row
from commerceflex.selfhosted._context import Context, new_id
from commerceflex.selfhosted._tables import CustomerRow, SubscriptionRow

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE
PAUSED = SubscriptionStatus.PAUSED
CANCELLED = SubscriptionStatus.CANCELLED


def _add_months(start: datetime, months: int) -> datetime:
    index = start.month - 1 + months
    year, month = start.year + index // 12, index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def next_billing(start: datetime, interval: BillingInterval, count: int) -> datetime:
    """
    One billing period after ``start``. Month ends clamp:
    Jan 31 + 1 month is Feb 28 (or 29).
    """
    match interval:
        case BillingInterval.WEEK:
            return start + timedelta(weeks=count)
        case BillingInterval.MONTH:
            return _add_months(start, count)
        case BillingInterval.YEAR:
            return _add_months(start, 12 * count)


class Subscriptions:
    def __init__(self, ctx: Context) -> None:
        self._ctx = ctx

    async def create(
        self,
        customer_id: str,
        variant_id: str,
        *,
        quantity: int = 1,
        interval: BillingInterval = BillingInterval.MONTH,
        interval_count: int = 1,
    ) -> Result[Subscription, CommerceError]:
        return await guarded(
            lambda: self._create(customer_id, variant_id, quantity, interval, interval_count)
        )

    async def get(self, subscription_id: str) -> Result[Subscription, CommerceError]:
        return await read(self._ctx.retry, lambda: self._get(subscription_id))

    async def update(
        self,
        subscription_id: str,
        *,
        quantity: int | None = None,
        variant_id: str | None = None,
    ) -> Result[Subscription, CommerceError]:
        return await guarded(lambda: self._update(subscription_id, quantity, variant_id))

    async def cancel(self, subscription_id: str) -> Result[Subscription, CommerceError]:
        return await guarded(lambda: self._move(subscription_id, CANCELLED))

    async def pause(self, subscription_id: str) -> Result[Subscription, CommerceError]:
        return await guarded(lambda: self._move(subscription_id, PAUSED))

    async def resume(self, subscription_id: str) -> Result[Subscription, CommerceError]:
        return await guarded(lambda: self._move(subscription_id, ACTIVE))

    async def _create(
        self,
        customer_id: str,
        variant_id: str,
        quantity: int,
        interval: BillingInterval,
        interval_count: int,
    ) -> Subscription:
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", field="quantity")
        if interval_count < 1:
            raise ValidationError("interval_count must be at least 1", field="interval_count")
        tenant = self._ctx.tenant_id
        now = self._ctx.clock()

        async with self._ctx.transaction() as session:
            customer = await session.get(CustomerRow, customer_id)
            if customer is None or customer.tenant_id != tenant:
                raise NotFoundError(
                    f"Customer {customer_id} not found", entity="customer", id=customer_id
                )
            await variant_row(session, tenant, variant_id)
            row = SubscriptionRow(
                id=new_id(),
                tenant_id=tenant,
                customer_id=customer_id,
                variant_id=variant_id,
                quantity=quantity,
                interval=interval.value,
                interval_count=interval_count,
                status=ACTIVE.value,
                next_billing_at=next_billing(now, interval, interval_count),
                created_at=now,
            )
            session.add(row)
        return convert.subscription(row)

    async def _row(self, session: AsyncSession, subscription_id: str) -> SubscriptionRow:
        row = await session.get(SubscriptionRow, subscription_id)
        if row is None or row.tenant_id != self._ctx.tenant_id:
            raise NotFoundError(
                f"Subscription {subscription_id} not found",
                entity="subscription",
                id=subscription_id,
            )
        return row

    async def _get(self, subscription_id: str) -> Subscription:
        async with self._ctx.session() as session:
            return convert.subscription(await self._row(session, subscription_id))

    async def _update(
        self, subscription_id: str, quantity: int | None, variant_id: str | None
    ) -> Subscription:
        if quantity is not None and quantity < 1:
            raise ValidationError("quantity must be at least 1", field="quantity")
        async with self._ctx.transaction() as session:
            row = await self._row(session, subscription_id)
            if row.status == CANCELLED.value:
                raise ProviderPermanentError(f"Subscription {subscription_id} is cancelled")
            if variant_id is not None:
                await variant_row(session, self._ctx.tenant_id, variant_id)
                row.variant_id = variant_id
            if quantity is not None:
                row.quantity = quantity
        return convert.subscription(row)

    async def _move(self, subscription_id: str, to: SubscriptionStatus) -> Subscription:
        now = self._ctx.clock()
        async with self._ctx.transaction() as session:
            row = await self._row(session, subscription_id)
            current = SubscriptionStatus(row.status)
            if current is to:
                return convert.subscription(row)
            if current is CANCELLED or (to is ACTIVE and current is not PAUSED):
                raise ProviderPermanentError(
                    f"Subscription {subscription_id} cannot go from {current.value} to {to.value}"
                )

            row.status = to.value
            if to is CANCELLED:
                row.cancelled_at = now
                row.next_billing_at = None
            elif to is ACTIVE:
                # Resuming bills one full period from now, not the missed dates
                row.next_billing_at = next_billing(
                    now, BillingInterval(row.interval), row.interval_count
                )
        logger.info("Subscription %s %s → %s", subscription_id, current.value, to.value)
        return convert.subscription(row)


__all__ = ("Subscriptions", "next_billing")
