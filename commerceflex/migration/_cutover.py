"""
Cutover — the compensated chain that moves a tenant's traffic.

    freeze ──▶ final sync ──▶ verify ──▶ flip override ──▶ thaw
      ↺ thaw                             ↺ restore override

Any failing step unwinds the completed ones: the source is thawed and the
selection is left as it was. Checkpoints are kept, so a retry resumes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from kungfu import Result

from commerceflex import saga as S
from commerceflex.migration._sync import OnPage, Sync, no_page
from commerceflex.migration._verify import VerificationReport, Verifier
from commerceflex.model import CommerceError, MigrationIntegrityError, classify
from commerceflex.provider import ProviderKind
from commerceflex.registry import ProviderRegistry

logger = logging.getLogger(__name__)


def cutover(
    registry: ProviderRegistry,
    tenant_id: str,
    sync: Sync,
    verifier: Verifier,
    *,
    on_page: OnPage = no_page,
    on_verified: Callable[[VerificationReport], Awaitable[None]] | None = None,
) -> S.SagaExpr[VerificationReport, CommerceError]:
    """
    Example:
        match await S.run(cutover(registry, "acme", sync, verifier)):
            case Ok(done): report = done.value
            case Error(failure): ...  # failure.error, failure.failed_step
    """

    async def freeze() -> None:
        await registry.freeze(tenant_id)
        logger.info("Froze writes for %s", tenant_id)

    async def thaw(_: object = None) -> None:
        registry.thaw(tenant_id)
        logger.info("Thawed writes for %s", tenant_id)

    async def final_sync() -> dict[str, int]:
        return await sync.full_pass(on_page=on_page)

    async def verify() -> VerificationReport:
        report = await verifier.run()
        if on_verified is not None:
            await on_verified(report)
        if not report.passed:
            raise MigrationIntegrityError(
                f"Verification failed for {tenant_id}: {len(report.mismatches)} mismatch(es)",
                mismatches=report.mismatches,
            )
        return report

    async def flip() -> ProviderKind | None:
        previous = (await registry.config(tenant_id)).override
        await registry.set_override(tenant_id, ProviderKind.SELF_HOSTED)
        await registry.invalidate(tenant_id)
        logger.info("Switched %s to the self-hosted backend", tenant_id)
        return previous

    async def unflip(previous: ProviderKind | None) -> None:
        await registry.set_override(tenant_id, previous)
        await registry.invalidate(tenant_id)
        logger.warning("Restored provider selection of %s", tenant_id)

    return (
        S.from_async(freeze, on_error=classify, compensate=thaw, name="freeze")
        .then(lambda _: S.from_async(final_sync, on_error=classify, name="final_sync"))
        .then(lambda _: S.from_async(verify, on_error=classify, name="verify"))
        .then(lambda report: S.from_async(flip, on_error=classify, compensate=unflip, name="flip")
              .then(lambda _: S.from_async(lambda: _done(thaw, report), on_error=classify, name="thaw")))
    )


async def _done(thaw: Callable[[], Awaitable[None]], report: VerificationReport) -> VerificationReport:
    await thaw()
    return report


async def run_cutover(
    registry: ProviderRegistry,
    tenant_id: str,
    sync: Sync,
    verifier: Verifier,
    *,
    on_page: OnPage = no_page,
    on_verified: Callable[[VerificationReport], Awaitable[None]] | None = None,
) -> Result[S.SagaResult[VerificationReport], S.SagaError[CommerceError]]:
    return await S.run(
        cutover(registry, tenant_id, sync, verifier, on_page=on_page, on_verified=on_verified)
    )


__all__ = ("cutover", "run_cutover")
