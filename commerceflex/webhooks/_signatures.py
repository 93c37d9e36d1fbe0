"""
Inbound webhook signatures.

Managed platform:
    X-Hub-Hmac-Sha256: base64(HMAC-SHA256(secret, body))
    X-Hub-Topic, X-Hub-Event-Id, X-Hub-Triggered-At

Card processor:
    Processor-Signature: t=<unix>,v1=<hex>[,v1=<hex>]
    HMAC-SHA256(secret, "<t>.<body>"), checked against the current and the
    previous secret so rotation never drops deliveries.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from kungfu import Result, Ok, Error

from commerceflex._types import Clock, as_naive_utc, utcnow
from commerceflex.model import Delivery, WebhookVerificationError

MANAGED_SIGNATURE = "X-Hub-Hmac-Sha256"
MANAGED_TOPIC = "X-Hub-Topic"
MANAGED_EVENT_ID = "X-Hub-Event-Id"
MANAGED_TRIGGERED_AT = "X-Hub-Triggered-At"
PROCESSOR_SIGNATURE = "Processor-Signature"


def header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def _json_object(body: bytes) -> dict[str, Any]:
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise WebhookVerificationError("Body is not valid JSON") from None
    if not isinstance(data, dict):
        raise WebhookVerificationError("Body is not a JSON object")
    return data


# ═══════════════════════════════════════════════════════════════════════════════
# Managed
# ═══════════════════════════════════════════════════════════════════════════════


def sign_managed(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


@dataclass(frozen=True, slots=True)
class ManagedVerifier:
    secret: str
    source: str = "managed"
    clock: Clock = utcnow

    def verify(
        self, headers: Mapping[str, str], body: bytes
    ) -> Result[Delivery, WebhookVerificationError]:
        try:
            return Ok(self._verify(headers, body))
        except WebhookVerificationError as e:
            return Error(e)

    def _verify(self, headers: Mapping[str, str], body: bytes) -> Delivery:
        given = header(headers, MANAGED_SIGNATURE)
        if not given:
            raise WebhookVerificationError(f"Missing {MANAGED_SIGNATURE}")
        if not hmac.compare_digest(sign_managed(self.secret, body), given.strip()):
            raise WebhookVerificationError("Signature mismatch")

        topic = header(headers, MANAGED_TOPIC)
        event_id = header(headers, MANAGED_EVENT_ID)
        if not topic or not event_id:
            raise WebhookVerificationError(f"Missing {MANAGED_TOPIC} or {MANAGED_EVENT_ID}")

        occurred_at = self.clock()
        raw_time = header(headers, MANAGED_TRIGGERED_AT)
        if raw_time:
            try:
                occurred_at = as_naive_utc(datetime.fromisoformat(raw_time.replace("Z", "+00:00")))
            except ValueError:
                raise WebhookVerificationError(f"Bad {MANAGED_TRIGGERED_AT}: {raw_time}") from None

        return Delivery(
            source=self.source,
            event_id=event_id,
            topic=topic,
            occurred_at=occurred_at,
            payload=_json_object(body),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Processor
# ═══════════════════════════════════════════════════════════════════════════════


def sign_processor(secret: str, timestamp: int, body: bytes) -> str:
    signed = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def processor_header(secret: str, timestamp: int, body: bytes) -> str:
    return f"t={timestamp},v1={sign_processor(secret, timestamp, body)}"


def _parse_signature(value: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in value.split(","):
        name, _, item = part.strip().partition("=")
        if name == "t":
            try:
                timestamp = int(item)
            except ValueError:
                raise WebhookVerificationError(f"Bad timestamp in {PROCESSOR_SIGNATURE}") from None
        elif name == "v1" and item:
            signatures.append(item)
    if timestamp is None or not signatures:
        raise WebhookVerificationError(f"Malformed {PROCESSOR_SIGNATURE}")
    return timestamp, signatures


@dataclass(frozen=True, slots=True)
class ProcessorVerifier:
    """
    ``secrets`` lists the current secret first, then the previous one
    while a rotation is in progress.
    """

    secrets: Sequence[str]
    tolerance: timedelta = timedelta(seconds=300)
    source: str = "processor"
    clock: Clock = utcnow

    def verify(
        self, headers: Mapping[str, str], body: bytes
    ) -> Result[Delivery, WebhookVerificationError]:
        try:
            return Ok(self._verify(headers, body))
        except WebhookVerificationError as e:
            return Error(e)

    def _verify(self, headers: Mapping[str, str], body: bytes) -> Delivery:
        given = header(headers, PROCESSOR_SIGNATURE)
        if not given:
            raise WebhookVerificationError(f"Missing {PROCESSOR_SIGNATURE}")
        timestamp, signatures = _parse_signature(given)

        sent_at = _utc(timestamp)
        if abs(self.clock() - sent_at) > self.tolerance:
            raise WebhookVerificationError("Signature timestamp outside tolerance")

        expected = [sign_processor(s, timestamp, body) for s in self.secrets if s]
        if not any(hmac.compare_digest(e, s) for e in expected for s in signatures):
            raise WebhookVerificationError("Signature mismatch")

        data = _json_object(body)
        event_id = data.get("id")
        topic = data.get("type")
        obj = (data.get("data") or {}).get("object")
        if not event_id or not topic or not isinstance(obj, dict):
            raise WebhookVerificationError("Event is missing id, type or data.object")

        created = data.get("created")
        return Delivery(
            source=self.source,
            event_id=str(event_id),
            topic=str(topic),
            occurred_at=_utc(int(created)) if isinstance(created, int) else sent_at,
            payload=obj,
        )


def _utc(timestamp: int) -> datetime:
    return as_naive_utc(datetime.fromtimestamp(timestamp, tz=UTC))


__all__ = (
    "header",
    "sign_managed",
    "ManagedVerifier",
    "sign_processor",
    "processor_header",
    "ProcessorVerifier",
)
