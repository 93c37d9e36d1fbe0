"""
Migration — copy a tenant from the managed platform into the self-hosted
schema and move its traffic over.

    from commerceflex import migration as MG

    migrations = MG.MigrationController(registry, sample_size=50, seed=7)
    await migrations.start("acme")
    ...
    match migrations.report("acme"):
        case Ok(report) if report.passed: ...
        case Ok(report): print(report.mismatches)
"""

from commerceflex.migration._checkpoint import Checkpoint, Checkpoints
from commerceflex.migration._sync import ENTITIES, Sync, unwrap
from commerceflex.migration._verify import (
    EntityCount,
    VerificationReport,
    Verifier,
    diff_product,
    diff_customer,
    diff_order,
)
from commerceflex.migration._cutover import cutover, run_cutover
from commerceflex.migration._controller import (
    Phase,
    FINISHED,
    Progress,
    MigrationController,
)

__all__ = (
    "Checkpoint",
    "Checkpoints",
    "ENTITIES",
    "Sync",
    "unwrap",
    "EntityCount",
    "VerificationReport",
    "Verifier",
    "diff_product",
    "diff_customer",
    "diff_order",
    "cutover",
    "run_cutover",
    "Phase",
    "FINISHED",
    "Progress",
    "MigrationController",
)
