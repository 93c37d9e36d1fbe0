"""
httpx helpers shared by the managed platform client and the card processor.

``send`` performs one request and returns the decoded JSON body or raises
the typed error matching the response.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from commerceflex.model import (
    CommerceError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PaymentDeclinedError,
    ProviderPermanentError,
    ProviderTransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        errors = body.get("errors") or body.get("error")
        if isinstance(errors, dict):
            return str(errors.get("message") or errors)
        if errors:
            return str(errors)
    return str(body)[:200]


def error_for(response: httpx.Response, backend: str) -> CommerceError:
    """Typed error for a non-2xx response."""
    status = response.status_code
    detail = _detail(response)
    message = f"{backend} {response.request.method} {response.request.url.path} -> {status}: {detail}"

    if status in (401, 403):
        return ConfigurationError(message)
    if status == 404:
        return NotFoundError(message)
    if status == 409:
        return ConflictError(message)
    if status == 402:
        decline = None
        try:
            err = response.json().get("error") or {}
            decline = err.get("decline_code") or err.get("code")
        except (ValueError, AttributeError):
            pass
        return PaymentDeclinedError(message, decline_code=decline)
    if status == 400:
        return ValidationError(message)
    if status == 429 or status >= 500:
        return ProviderTransientError(message, status_code=status)
    return ProviderPermanentError(message, status_code=status)


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    backend: str,
    **kwargs: Any,
) -> Any:
    """
    One request; transport failures and timeouts become ProviderTransientError.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ProviderTransientError(f"{backend} {method} {url} timed out") from e
    except httpx.TransportError as e:
        raise ProviderTransientError(f"{backend} {method} {url} failed: {e}") from e

    if response.is_success:
        if not response.content:
            return {}
        return response.json()

    error = error_for(response, backend)
    logger.info("%s", error)
    raise error


__all__ = ("send", "error_for")
