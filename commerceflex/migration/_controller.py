"""
Migration controller — one background task per tenant.

    start ──▶ exporting ──▶ cutting_over ──▶ completed
                 │  ▲             │
           pause │  │ resume      └──▶ failed   (source thawed, selection kept)
                 ▼  │
               paused
    abort (not during cutover) ──▶ aborted

Checkpoints survive failure and abort; the next start resumes from them.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from kungfu import Result, Ok, Error

from commerceflex._types import Clock, utcnow
from commerceflex.migration._checkpoint import Checkpoints
from commerceflex.migration._cutover import run_cutover
from commerceflex.migration._sync import ENTITIES, Sync
from commerceflex.migration._verify import VerificationReport, Verifier
from commerceflex.model import (
    CommerceError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    classify,
)
from commerceflex.provider import Provider, ProviderKind
from commerceflex.registry import ProviderRegistry
from commerceflex.selfhosted import SelfHostedProvider

logger = logging.getLogger(__name__)

_EXPORT_SHARE = 90.0


class Phase(Enum):
    PENDING = "pending"
    EXPORTING = "exporting"
    CUTTING_OVER = "cutting_over"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


FINISHED = frozenset({Phase.COMPLETED, Phase.FAILED, Phase.ABORTED})


@dataclass(frozen=True, slots=True)
class Progress:
    tenant_id: str
    phase: Phase
    paused: bool
    percentage: float
    counts: dict[str, int]
    totals: dict[str, int | None]
    started_at: datetime
    finished_at: datetime | None = None
    error: CommerceError | None = None


@dataclass(eq=False)
class _Run:
    tenant_id: str
    started_at: datetime
    phase: Phase = Phase.PENDING
    counts: dict[str, int] = field(default_factory=lambda: dict.fromkeys(ENTITIES, 0))
    totals: dict[str, int | None] = field(default_factory=lambda: dict.fromkeys(ENTITIES))
    done: set[str] = field(default_factory=set)
    running: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    report: VerificationReport | None = None
    error: CommerceError | None = None
    finished_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def paused(self) -> bool:
        return self.phase is Phase.EXPORTING and not self.running.is_set()

    def percentage(self) -> float:
        match self.phase:
            case Phase.COMPLETED:
                return 100.0
            case Phase.CUTTING_OVER:
                return _EXPORT_SHARE
        fractions = []
        for entity in ENTITIES:
            total = self.totals[entity]
            if entity in self.done:
                fractions.append(1.0)
            elif total:
                fractions.append(min(self.counts[entity] / total, 1.0))
            else:
                fractions.append(0.0)
        return round(sum(fractions) / len(fractions) * _EXPORT_SHARE, 1)

    def snapshot(self) -> Progress:
        return Progress(
            tenant_id=self.tenant_id,
            phase=self.phase,
            paused=self.paused,
            percentage=self.percentage(),
            counts=dict(self.counts),
            totals=dict(self.totals),
            started_at=self.started_at,
            finished_at=self.finished_at,
            error=self.error,
        )

    async def on_page(self, entity: str, offset: int, total: int | None) -> None:
        self.counts[entity] = offset
        if total is not None:
            self.totals[entity] = total

    async def checkpoint(self) -> None:
        """Between pages: wait here while paused."""
        await self.running.wait()

    async def verified(self, report: VerificationReport) -> None:
        self.report = report


class MigrationController:
    """
    Example:
        migrations = MigrationController(registry, sample_size=50, seed=7)

        await migrations.start("acme")
        await migrations.pause("acme")
        await migrations.resume("acme")
        match migrations.progress("acme"):
            case Ok(p): print(p.phase, p.percentage)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        page_size: int = 100,
        sample_size: int = 25,
        seed: int = 0,
        clock: Clock = utcnow,
    ) -> None:
        self._registry = registry
        self._page_size = page_size
        self._sample_size = sample_size
        self._seed = seed
        self._clock = clock
        self._runs: dict[str, _Run] = {}

    # ─── control ──────────────────────────────────────────────────────────────

    async def start(self, tenant_id: str) -> Result[Progress, CommerceError]:
        existing = self._runs.get(tenant_id)
        if existing is not None and existing.active:
            return Error(ConflictError(f"Migration of {tenant_id} is already running"))
        try:
            await self._preflight(tenant_id)
        except CommerceError as e:
            logger.warning("Cannot start migration of %s: %s", tenant_id, e)
            return Error(e)

        run = _Run(tenant_id=tenant_id, started_at=self._clock())
        run.running.set()
        run.task = asyncio.create_task(self._migrate(run), name=f"migration:{tenant_id}")
        self._runs[tenant_id] = run
        logger.info("Started migration of %s", tenant_id)
        return Ok(run.snapshot())

    async def pause(self, tenant_id: str) -> Result[Progress, CommerceError]:
        match self._active(tenant_id):
            case Ok(run):
                run.running.clear()
                logger.info("Paused migration of %s", tenant_id)
                return Ok(run.snapshot())
            case Error(e):
                return Error(e)

    async def resume(self, tenant_id: str) -> Result[Progress, CommerceError]:
        match self._active(tenant_id):
            case Ok(run):
                run.running.set()
                logger.info("Resumed migration of %s", tenant_id)
                return Ok(run.snapshot())
            case Error(e):
                return Error(e)

    async def abort(self, tenant_id: str) -> Result[Progress, CommerceError]:
        match self._active(tenant_id):
            case Ok(run):
                assert run.task is not None
                run.task.cancel()
                await asyncio.gather(run.task, return_exceptions=True)
                return Ok(run.snapshot())
            case Error(e):
                return Error(e)

    # ─── observation ──────────────────────────────────────────────────────────

    def progress(self, tenant_id: str) -> Result[Progress, CommerceError]:
        run = self._runs.get(tenant_id)
        if run is None:
            return Error(NotFoundError(f"No migration for {tenant_id}", entity="migration", id=tenant_id))
        return Ok(run.snapshot())

    def report(self, tenant_id: str) -> Result[VerificationReport, CommerceError]:
        run = self._runs.get(tenant_id)
        if run is None or run.report is None:
            return Error(NotFoundError(
                f"No verification report for {tenant_id}", entity="report", id=tenant_id
            ))
        return Ok(run.report)

    async def wait(self, tenant_id: str) -> Result[Progress, CommerceError]:
        """Block until the tenant's migration finishes."""
        run = self._runs.get(tenant_id)
        if run is None:
            return Error(NotFoundError(f"No migration for {tenant_id}", entity="migration", id=tenant_id))
        if run.task is not None:
            await asyncio.gather(run.task, return_exceptions=True)
        return Ok(run.snapshot())

    async def shutdown(self) -> None:
        """Abort exports in progress and wait for cutovers to finish."""
        tasks = []
        for run in self._runs.values():
            if not run.active:
                continue
            assert run.task is not None
            if run.phase is not Phase.CUTTING_OVER:
                run.task.cancel()
            tasks.append(run.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ─── internals ────────────────────────────────────────────────────────────

    def _active(self, tenant_id: str) -> Result[_Run, CommerceError]:
        run = self._runs.get(tenant_id)
        if run is None or not run.active:
            return Error(NotFoundError(
                f"No running migration for {tenant_id}", entity="migration", id=tenant_id
            ))
        if run.phase is Phase.CUTTING_OVER:
            return Error(ConflictError(f"Migration of {tenant_id} is cutting over"))
        return Ok(run)

    async def _preflight(self, tenant_id: str) -> None:
        if await self._registry.select(tenant_id) is ProviderKind.SELF_HOSTED:
            raise ConflictError(f"{tenant_id} already runs on the self-hosted backend")
        for kind in (ProviderKind.MANAGED, ProviderKind.SELF_HOSTED):
            match await self._registry.provider_for(tenant_id, kind):
                case Ok(_):
                    pass
                case Error(e):
                    raise e

    async def _migrate(self, run: _Run) -> None:
        tenant_id = run.tenant_id
        try:
            async with AsyncExitStack() as stack:
                source = await stack.enter_async_context(
                    self._registry.lease(tenant_id, ProviderKind.MANAGED)
                )
                destination = await stack.enter_async_context(
                    self._registry.lease(tenant_id, ProviderKind.SELF_HOSTED)
                )
                await self._pipeline(run, source, destination)
        except asyncio.CancelledError:
            run.phase = Phase.ABORTED
            logger.warning("Migration of %s aborted", tenant_id)
            raise
        except CommerceError as e:
            run.phase, run.error = Phase.FAILED, e
            logger.warning("Migration of %s failed: %s", tenant_id, e)
        except Exception as e:
            logger.exception("Migration of %s crashed", tenant_id)
            run.phase, run.error = Phase.FAILED, classify(e)
        finally:
            run.finished_at = self._clock()

    async def _pipeline(self, run: _Run, source: Provider, destination: Provider) -> None:
        if not isinstance(destination, SelfHostedProvider):
            raise ConfigurationError(
                f"Migration target of {run.tenant_id} is not self-hosted", tenant_id=run.tenant_id
            )
        importer = destination.importer
        checkpoints = Checkpoints(destination.database, run.tenant_id, clock=self._clock)
        for entity, checkpoint in (await checkpoints.all()).items():
            run.counts[entity] = checkpoint.offset
            if checkpoint.done:
                run.done.add(entity)

        sync = Sync(source, importer, checkpoints, page_size=self._page_size)
        run.phase = Phase.EXPORTING
        for entity in ENTITIES:
            await sync.entity(entity, before_page=run.checkpoint, on_page=run.on_page)
            run.done.add(entity)

        # Pausing is not honoured past this point
        await run.checkpoint()
        run.phase = Phase.CUTTING_OVER
        verifier = Verifier(
            source,
            importer,
            sample_size=self._sample_size,
            seed=self._seed,
            page_size=self._page_size,
            clock=self._clock,
        )
        match await run_cutover(
            self._registry, run.tenant_id, sync, verifier, on_verified=run.verified
        ):
            case Ok(_):
                run.phase = Phase.COMPLETED
                logger.info("Migration of %s completed", run.tenant_id)
            case Error(failure):
                run.phase, run.error = Phase.FAILED, failure.error
                logger.warning(
                    "Cutover of %s failed at %s (%d compensator(s) run, %d failed): %s",
                    run.tenant_id,
                    failure.failed_step,
                    failure.compensators_run,
                    failure.compensators_failed,
                    failure.error,
                )


__all__ = ("Phase", "FINISHED", "Progress", "MigrationController")
