"""
Export checkpoints, stored in the destination schema beside the data
they describe.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, select

from commerceflex._sql import insert_for
from commerceflex._types import Clock, utcnow
from commerceflex.selfhosted import CheckpointRow, Database


@dataclass(frozen=True, slots=True)
class Checkpoint:
    entity: str
    cursor: str | None = None
    offset: int = 0
    done: bool = False


class Checkpoints:
    def __init__(self, database: Database, tenant_id: str, *, clock: Clock = utcnow) -> None:
        self._db = database
        self._tenant_id = tenant_id
        self._clock = clock
        self._insert = insert_for(database.dialect)

    async def load(self, entity: str) -> Checkpoint:
        async with self._db.sessions() as session:
            row = await session.get(CheckpointRow, (self._tenant_id, entity))
        if row is None:
            return Checkpoint(entity)
        return Checkpoint(entity, row.cursor, row.offset, row.done)

    async def all(self) -> dict[str, Checkpoint]:
        async with self._db.sessions() as session:
            rows = await session.scalars(
                select(CheckpointRow).where(CheckpointRow.tenant_id == self._tenant_id)
            )
            return {r.entity: Checkpoint(r.entity, r.cursor, r.offset, r.done) for r in rows}

    async def save(self, checkpoint: Checkpoint) -> None:
        values = {
            "cursor": checkpoint.cursor,
            "offset": checkpoint.offset,
            "done": checkpoint.done,
            "updated_at": self._clock(),
        }
        stmt = (
            self._insert(CheckpointRow)
            .values(tenant_id=self._tenant_id, entity=checkpoint.entity, **values)
            .on_conflict_do_update(index_elements=["tenant_id", "entity"], set_=values)
        )
        async with self._db.sessions() as session, session.begin():
            await session.execute(stmt)

    async def reset(self) -> None:
        async with self._db.sessions() as session, session.begin():
            await session.execute(
                delete(CheckpointRow).where(CheckpointRow.tenant_id == self._tenant_id)
            )


__all__ = ("Checkpoint", "Checkpoints")
