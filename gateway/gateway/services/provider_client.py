"""HTTP client for the voice-assistant provider (assistants and phone numbers)."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ProviderErrorKind(str, Enum):
    """Failure classes the provisioning policies branch on."""

    TRANSIENT = "transient"  # timeout, network, 429, 5xx
    REJECTED = "rejected"  # 4xx validation / unavailable inventory
    UNAUTHORIZED = "unauthorized"  # 401 / 403


class ProviderError(Exception):
    """A provider call failed; :attr:`kind` drives retry and fallback decisions."""

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.kind is ProviderErrorKind.TRANSIENT

    @classmethod
    def from_status(cls, status_code: int, body: str) -> ProviderError:
        if status_code in (401, 403):
            kind = ProviderErrorKind.UNAUTHORIZED
        elif status_code == 429 or status_code >= 500:
            kind = ProviderErrorKind.TRANSIENT
        else:
            kind = ProviderErrorKind.REJECTED
        return cls(f"Provider returned HTTP {status_code}: {body[:300]}", kind, status_code=status_code)


class ProviderClient:
    """Thin async wrapper around the provider REST API.

    Every failure is raised as :class:`ProviderError`; retry policy lives
    with the caller.

    Parameters
    ----------
    base_url:
        Root URL of the provider API.
    api_key:
        Bearer token for the provider account.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (tests inject ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    async def create_assistant(self, config: dict[str, Any]) -> dict[str, Any]:
        """Create an assistant; returns the provider record (``id`` is required)."""
        body = await self._request("POST", "/assistant", json=config)
        if not body.get("id"):
            raise ProviderError("Assistant response missing id", ProviderErrorKind.REJECTED)
        return body

    async def create_phone_number(
        self,
        *,
        assistant_id: str,
        area_code: str,
        name: str,
    ) -> dict[str, Any]:
        """Buy a number in *area_code* and attach it to *assistant_id*."""
        payload = {
            "provider": "vapi",
            "assistantId": assistant_id,
            "numberDesiredAreaCode": area_code,
            "name": name,
        }
        body = await self._request("POST", "/phone-number", json=payload)
        if not body.get("number"):
            raise ProviderError(
                f"No number returned for area code {area_code}",
                ProviderErrorKind.REJECTED,
            )
        return body

    async def delete_assistant(self, assistant_id: str) -> None:
        await self._request("DELETE", f"/assistant/{assistant_id}")

    async def release_phone_number(self, phone_number_id: str) -> None:
        await self._request("DELETE", f"/phone-number/{phone_number_id}")

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Provider returned %d for %s %s: %s",
                exc.response.status_code,
                method,
                path,
                exc.response.text[:500],
            )
            raise ProviderError.from_status(exc.response.status_code, exc.response.text) from exc
        except httpx.TimeoutException as exc:
            logger.warning("Provider request %s %s timed out", method, path)
            raise ProviderError(f"Provider request timed out: {exc}", ProviderErrorKind.TRANSIENT) from exc
        except httpx.RequestError as exc:
            logger.warning("Provider request %s %s failed: %s", method, path, exc)
            raise ProviderError(f"Provider request failed: {exc}", ProviderErrorKind.TRANSIENT) from exc

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError("Provider returned a non-JSON body", ProviderErrorKind.TRANSIENT) from exc
        return body if isinstance(body, dict) else {}
