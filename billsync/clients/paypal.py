"""Async client for the PayPal OAuth and Subscriptions APIs."""

from __future__ import annotations

from typing import Any

import httpx

from billsync.config import settings

DEFAULT_BASE_URL = "https://api.paypal.com"


class PayPalError(RuntimeError):
    """Base error for PayPal client failures."""

    def __init__(
        self, message: str, code: str = "PAYPAL_ERROR", status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class PayPalAuthenticationError(PayPalError):
    """Raised when the client-credentials token request fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, code="PAYPAL_AUTH_FAILED", status_code=status_code)


class PayPalResourceError(PayPalError):
    """Raised when the subscription lookup returns a non-2xx response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, code="PAYPAL_RESOURCE_FAILED", status_code=status_code)


class PayPalTimeoutError(PayPalError):
    """Raised when a PayPal request times out; safe to retry."""

    def __init__(self, message: str = "PayPal request timed out") -> None:
        super().__init__(message, code="PAYPAL_TIMEOUT")


class PayPalClient:
    """Minimal PayPal client; fetches a fresh access token for every lookup."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 20.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET are required.")
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout
        )

    @classmethod
    def from_settings(cls) -> "PayPalClient":
        """Instantiate the client from PAYPAL_* settings."""
        return cls(
            settings.paypal_client_id or "",
            settings.paypal_client_secret or "",
            base_url=settings.paypal_base_url,
            timeout=settings.provider_timeout_seconds,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            await self._http.aclose()

    async def fetch_access_token(self) -> str:
        """Exchange client credentials for a bearer token."""
        try:
            response = await self._http.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self._client_id, self._client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise PayPalTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise PayPalAuthenticationError(f"PayPal authentication failed: {exc}") from exc

        if response.status_code >= 400:
            raise PayPalAuthenticationError(
                f"PayPal authentication failed: {response.text}",
                status_code=response.status_code,
            )
        try:
            token = response.json().get("access_token")
        except ValueError as exc:
            raise PayPalAuthenticationError(
                "PayPal authentication failed: token response was not JSON",
                status_code=response.status_code,
            ) from exc
        if not token:
            raise PayPalAuthenticationError(
                "PayPal authentication failed: access_token missing from response",
                status_code=response.status_code,
            )
        return token

    async def get_subscription(self, subscription_id: str, *, access_token: str) -> dict[str, Any]:
        """Fetch ``/v1/billing/subscriptions/{id}``; error bodies are passed through verbatim."""
        try:
            response = await self._http.get(
                f"/v1/billing/subscriptions/{subscription_id}",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.TimeoutException as exc:
            raise PayPalTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise PayPalResourceError(f"Failed to get subscription details: {exc}") from exc

        if response.status_code >= 400:
            raise PayPalResourceError(
                f"Failed to get subscription details: {response.text}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise PayPalResourceError(
                "Failed to get subscription details: response was not JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise PayPalResourceError("Failed to get subscription details: unexpected schema")
        return payload

    async def fetch_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Token exchange followed by the subscription lookup."""
        token = await self.fetch_access_token()
        return await self.get_subscription(subscription_id, access_token=token)

    async def __aenter__(self) -> "PayPalClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
