"""
HTTP client for the managed commerce platform.

The platform exposes two APIs under one host: the storefront API (catalog,
carts, discount lookups) authorized by a public storefront token, and the
admin API (orders, customers) authorized by a private admin token. One
pooled ``httpx.AsyncClient`` serves both.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any

import httpx

from commerceflex._http import send
from commerceflex._types import Clock
from commerceflex.model import ConfigurationError
from commerceflex.provider import RetryPolicy, WriteGate

STOREFRONT_TOKEN = "X-Storefront-Access-Token"
ADMIN_TOKEN = "X-Admin-Access-Token"


class ManagedClient:
    backend = "managed"

    def __init__(
        self,
        store_domain: str,
        storefront_token: str,
        *,
        admin_token: str | None = None,
        api_version: str = "2024-10",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not store_domain or not storefront_token:
            raise ConfigurationError("Managed backend requires a store domain and storefront token")
        self.store_domain = store_domain
        self._storefront_token = storefront_token
        self._admin_token = admin_token
        self._client = httpx.AsyncClient(
            base_url=f"https://{store_domain}/api/{api_version}",
            timeout=timeout,
            transport=transport,
        )

    @property
    def has_admin(self) -> bool:
        return self._admin_token is not None

    async def storefront(self, method: str, path: str, **kwargs: Any) -> Any:
        return await send(
            self._client,
            method,
            path,
            backend=self.backend,
            headers={STOREFRONT_TOKEN: self._storefront_token},
            **kwargs,
        )

    async def admin(
        self, method: str, path: str, *, idempotency_key: str | None = None, **kwargs: Any
    ) -> Any:
        if self._admin_token is None:
            raise ConfigurationError(
                f"{method} {path} needs the admin API; no admin token configured"
            )
        headers = {ADMIN_TOKEN: self._admin_token}
        if idempotency_key is not None:
            headers["Idempotency-Key"] = idempotency_key
        return await send(
            self._client,
            method,
            f"/admin{path}",
            backend=self.backend,
            headers=headers,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass(frozen=True)
class Context:
    """Shared state of one managed adapter instance."""

    tenant_id: str
    client: ManagedClient
    gate: WriteGate
    retry: RetryPolicy
    clock: Clock

    def writing(self) -> AbstractAsyncContextManager[None]:
        return self.gate.writing(self.tenant_id)


__all__ = ("ManagedClient", "Context", "STOREFRONT_TOKEN", "ADMIN_TOKEN")
