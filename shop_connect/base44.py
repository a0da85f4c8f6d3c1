from __future__ import annotations

import logging
from typing import Any

import httpx

from shop_connect.errors import DownstreamError, Misconfigured
from shop_connect.oauth import AccessCredential
from shop_connect.webhooks import VerifiedWebhook

logger = logging.getLogger(__name__)


def _error_detail_from_response(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        text = response.text.strip()
        return text or response.reason_phrase


class Base44Client:
    """Calls into the Base44 app, which owns stores, credentials and order data."""

    def __init__(
        self,
        *,
        api_key: str | None,
        save_shopify_url: str | None = None,
        webhook_url: str | None = None,
        get_store_url: str | None = None,
        ping_url: str | None = None,
        timeout: float = 20.0,
    ) -> None:
        self._api_key = api_key
        self._save_shopify_url = save_shopify_url
        self._webhook_url = webhook_url
        self._get_store_url = get_store_url
        self._ping_url = ping_url
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "Base44Client":
        def _url(value) -> str | None:
            return str(value) if value else None

        return cls(
            api_key=settings.BASE44_API_KEY,
            save_shopify_url=_url(settings.BASE44_SAVE_SHOPIFY_URL),
            webhook_url=_url(settings.BASE44_WEBHOOK_URL),
            get_store_url=_url(settings.BASE44_GET_STORE_URL),
            ping_url=_url(settings.BASE44_PING_URL),
            timeout=settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS,
        )

    @property
    def can_save_connections(self) -> bool:
        return bool(self._save_shopify_url and self._api_key)

    @property
    def can_forward_webhooks(self) -> bool:
        return bool(self._webhook_url and self._api_key)

    async def save_shopify_connection(self, credential: AccessCredential) -> Any:
        if not self.can_save_connections:
            raise Misconfigured("Missing BASE44_SAVE_SHOPIFY_URL or BASE44_API_KEY env vars")
        return await self._post(
            url=self._save_shopify_url,
            payload={
                "brandId": credential.correlation_id,
                "shop": credential.shop_domain,
                "accessToken": credential.access_token,
                "scope": credential.scope_csv,
            },
        )

    async def forward_webhook(self, webhook: VerifiedWebhook) -> Any:
        if not self.can_forward_webhooks:
            raise Misconfigured("Missing BASE44_WEBHOOK_URL or BASE44_API_KEY env vars")
        return await self._post(
            url=self._webhook_url,
            payload={
                "topic": webhook.topic,
                "shop": webhook.shop_domain,
                "payload": webhook.payload,
            },
        )

    async def get_store(self, brand_id: str) -> dict[str, Any] | None:
        if not self._get_store_url or not self._api_key:
            raise Misconfigured("Missing BASE44_GET_STORE_URL or BASE44_API_KEY env vars")
        body = await self._post(url=self._get_store_url, payload={"brandId": brand_id})
        if not isinstance(body, dict) or not body.get("ok") or not isinstance(body.get("store"), dict):
            return None
        return body["store"]

    async def ping(self) -> Any:
        if not self._ping_url or not self._api_key:
            raise Misconfigured("Missing BASE44_PING_URL or BASE44_API_KEY env vars")
        return await self._post(url=self._ping_url, payload={"from": "shop-connect"})

    async def _post(self, *, url: str, payload: dict[str, Any]) -> Any:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self._api_key or "",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise DownstreamError(f"Base44 request failed: {exc}") from exc

        if response.status_code >= 400:
            raise DownstreamError(
                f"Base44 request failed ({response.status_code})",
                details=_error_detail_from_response(response),
            )

        try:
            return response.json()
        except ValueError as exc:
            raise DownstreamError("Base44 returned invalid JSON") from exc
