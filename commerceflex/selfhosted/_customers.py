"""
Self-hosted customer accounts.
"""

from __future__ import annotations

from kungfu import Result
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from commerceflex.model import (
    CommerceError,
    ConflictError,
    Customer,
    CustomerInput,
    NotFoundError,
    Page,
    ValidationError,
    normalize_email,
)
from commerceflex.provider import guarded, read, writes
from commerceflex.selfhosted import _convert as convert
from commerceflex.selfhosted._context import (
    Context,
    check_page_size,
    decode_cursor,
    encode_cursor,
    new_id,
)
from commerceflex.selfhosted._tables import CustomerRow


class Customers:
    def __init__(self, ctx: Context) -> None:
        self._ctx = ctx

    async def get(self, customer_id: str) -> Result[Customer, CommerceError]:
        return await read(self._ctx.retry, lambda: self._get(customer_id))

    async def get_by_email(self, email: str) -> Result[Customer, CommerceError]:
        return await read(self._ctx.retry, lambda: self._by_email(email))

    async def create(self, data: CustomerInput) -> Result[Customer, CommerceError]:
        return await guarded(lambda: self._create(data))

    async def update(
        self, customer_id: str, data: CustomerInput
    ) -> Result[Customer, CommerceError]:
        return await guarded(lambda: self._update(customer_id, data))

    async def list(
        self, *, first: int = 50, after: str | None = None
    ) -> Result[Page[Customer], CommerceError]:
        return await read(self._ctx.retry, lambda: self._page(first, after))

    async def _get(self, customer_id: str) -> Customer:
        async with self._ctx.session() as session:
            row = await session.get(CustomerRow, customer_id)
        if row is None or row.tenant_id != self._ctx.tenant_id:
            raise NotFoundError(f"Customer {customer_id} not found", entity="customer", id=customer_id)
        return convert.customer(row)

    async def _by_email(self, email: str) -> Customer:
        normalized = normalize_email(email)
        async with self._ctx.session() as session:
            row = await session.scalar(
                select(CustomerRow).where(
                    CustomerRow.tenant_id == self._ctx.tenant_id,
                    CustomerRow.email == normalized,
                )
            )
        if row is None:
            raise NotFoundError(f"No customer with email {normalized}", entity="customer", id=normalized)
        return convert.customer(row)

    @writes
    async def _create(self, data: CustomerInput) -> Customer:
        if data.email is None:
            raise ValidationError("email is required", field="email")
        now = self._ctx.clock()
        row = CustomerRow(
            id=new_id(),
            tenant_id=self._ctx.tenant_id,
            email=normalize_email(data.email),
            first_name=data.first_name,
            last_name=data.last_name,
            phone=data.phone,
            addresses=[a.to_dict() for a in data.addresses or ()],
            accepts_marketing=bool(data.accepts_marketing),
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._ctx.transaction() as session:
                session.add(row)
        except IntegrityError:
            raise ConflictError(f"A customer with email {row.email} already exists") from None
        return convert.customer(row)

    @writes
    async def _update(self, customer_id: str, data: CustomerInput) -> Customer:
        tenant = self._ctx.tenant_id
        try:
            async with self._ctx.transaction() as session:
                row = await session.get(CustomerRow, customer_id)
                if row is None or row.tenant_id != tenant:
                    raise NotFoundError(
                        f"Customer {customer_id} not found", entity="customer", id=customer_id
                    )
                if data.email is not None:
                    row.email = normalize_email(data.email)
                if data.first_name is not None:
                    row.first_name = data.first_name
                if data.last_name is not None:
                    row.last_name = data.last_name
                if data.phone is not None:
                    row.phone = data.phone
                if data.addresses is not None:
                    row.addresses = [a.to_dict() for a in data.addresses]
                if data.accepts_marketing is not None:
                    row.accepts_marketing = data.accepts_marketing
                row.updated_at = self._ctx.clock()
        except IntegrityError:
            raise ConflictError(f"Email {data.email} belongs to another customer") from None
        return convert.customer(row)

    async def _page(self, first: int, after: str | None) -> Page[Customer]:
        check_page_size(first)
        scope = [CustomerRow.tenant_id == self._ctx.tenant_id]
        async with self._ctx.session() as session:
            count = await session.scalar(select(func.count()).select_from(CustomerRow).where(*scope))
            stmt = select(CustomerRow).where(*scope).order_by(CustomerRow.id).limit(first + 1)
            if after is not None:
                stmt = stmt.where(CustomerRow.id > decode_cursor(after))
            rows = list(await session.scalars(stmt))

        more = len(rows) > first
        rows = rows[:first]
        return Page(
            items=tuple(convert.customer(r) for r in rows),
            next_cursor=encode_cursor(rows[-1].id) if more else None,
            total=count,
        )


__all__ = ("Customers",)
