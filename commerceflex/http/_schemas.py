"""
Response models for the HTTP surface.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from kungfu import Result, Ok, Error
from pydantic import BaseModel

from commerceflex.migration import Progress, VerificationReport
from commerceflex.model import (
    CommerceError,
    ConfigurationError,
    ConflictError,
    MigrationIntegrityError,
    NotFoundError,
    ValidationError,
    WebhookEvent,
    WebhookVerificationError,
)
from commerceflex.webhooks import Outcome


def status_for(error: CommerceError) -> int:
    match error:
        case ValidationError():
            return 400
        case WebhookVerificationError():
            return 401
        case NotFoundError():
            return 404
        case ConflictError() | MigrationIntegrityError():
            return 409
        case ConfigurationError():
            return 503
    # Backend failures, transient or not
    return 502


class ErrorOut(BaseModel):
    kind: str
    message: str
    recovery: str
    retryable: bool

    @classmethod
    def from_domain(cls, error: CommerceError) -> ErrorOut:
        return cls(
            kind=error.kind.value,
            message=error.message,
            recovery=error.recovery.value,
            retryable=error.retryable,
        )


# ─── webhooks ─────────────────────────────────────────────────────────────────


class EventOut(BaseModel):
    id: str
    tenant_id: str
    type: str
    object_type: str
    object_id: str
    occurred_at: datetime
    source: str
    payload: dict[str, Any]

    @classmethod
    def from_domain(cls, event: WebhookEvent) -> EventOut:
        return cls(
            id=event.id,
            tenant_id=event.tenant_id,
            type=event.type.value,
            object_type=event.object_type,
            object_id=event.object_id,
            occurred_at=event.occurred_at,
            source=event.source,
            payload=dict(event.payload),
        )


class WebhookOut(BaseModel):
    status: Literal["processed", "duplicate", "ignored", "rejected"]
    event: EventOut | None = None
    error: ErrorOut | None = None

    @classmethod
    def from_domain(cls, dom: Result[Outcome, CommerceError]) -> WebhookOut:
        match dom:
            case Ok(outcome):
                event = EventOut.from_domain(outcome.event) if outcome.event else None
                return cls(status=outcome.disposition.value, event=event)
            case Error(e):
                return cls(status="rejected", error=ErrorOut.from_domain(e))


# ─── migrations ───────────────────────────────────────────────────────────────


class ProgressOut(BaseModel):
    tenant_id: str
    phase: str
    paused: bool
    percentage: float
    counts: dict[str, int]
    totals: dict[str, int | None]
    started_at: datetime
    finished_at: datetime | None = None
    error: ErrorOut | None = None

    @classmethod
    def from_domain(cls, progress: Progress) -> ProgressOut:
        return cls(
            tenant_id=progress.tenant_id,
            phase=progress.phase.value,
            paused=progress.paused,
            percentage=progress.percentage,
            counts=progress.counts,
            totals=progress.totals,
            started_at=progress.started_at,
            finished_at=progress.finished_at,
            error=ErrorOut.from_domain(progress.error) if progress.error else None,
        )


class CountOut(BaseModel):
    source: int
    destination: int


class ReportOut(BaseModel):
    passed: bool
    counts: dict[str, CountOut]
    sampled: int
    sample_size: int
    seed: int
    mismatches: list[str]
    checked_at: datetime

    @classmethod
    def from_domain(cls, report: VerificationReport) -> ReportOut:
        return cls(
            passed=report.passed,
            counts={
                entity: CountOut(source=c.source, destination=c.destination)
                for entity, c in report.counts.items()
            },
            sampled=report.sampled,
            sample_size=report.sample_size,
            seed=report.seed,
            mismatches=list(report.mismatches),
            checked_at=report.checked_at,
        )


__all__ = (
    "status_for",
    "ErrorOut",
    "EventOut",
    "WebhookOut",
    "ProgressOut",
    "CountOut",
    "ReportOut",
)
