from __future__ import annotations

from typing import Any

import httpx

from shop_connect.errors import ShopConnectError, TokenExchangeFailed


class ShopifyApiError(ShopConnectError):
    def __init__(
        self,
        *,
        message: str,
        status_code: int = 502,
        step: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.step = step
        self.details = details

    def to_content(self) -> dict[str, Any]:
        content = super().to_content()
        if self.step:
            content["step"] = self.step
        if self.details is not None:
            content["details"] = self.details
        return content


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ShopifyApiClient:
    def __init__(self, *, timeout: float = 20.0, admin_api_version: str = "2024-01") -> None:
        self._timeout = timeout
        self._admin_api_version = admin_api_version

    async def exchange_code_for_access_token(
        self,
        *,
        shop_domain: str,
        client_id: str,
        client_secret: str,
        code: str,
    ) -> tuple[str, str]:
        url = f"https://{shop_domain}/admin/oauth/access_token"
        payload = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload)
        except httpx.RequestError as exc:
            raise TokenExchangeFailed(
                f"Network error during OAuth token exchange: {exc.__class__.__name__}"
            ) from exc

        body = _response_body(response)
        if not response.is_success:
            raise TokenExchangeFailed(
                f"OAuth token exchange failed ({response.status_code})",
                upstream_status=response.status_code,
                upstream_body=body,
            )
        if not isinstance(body, dict):
            raise TokenExchangeFailed(
                "OAuth token exchange returned invalid JSON",
                upstream_status=response.status_code,
                upstream_body=body,
            )

        access_token = body.get("access_token")
        scopes = body.get("scope")
        if not isinstance(access_token, str) or not access_token:
            raise TokenExchangeFailed(
                "No access token returned from Shopify",
                upstream_status=response.status_code,
                upstream_body=body,
            )
        if not isinstance(scopes, str):
            raise TokenExchangeFailed(
                "OAuth token exchange response is missing scope",
                upstream_status=response.status_code,
                upstream_body={key: value for key, value in body.items() if key != "access_token"},
            )
        return access_token, scopes

    async def create_price_rule(
        self,
        *,
        shop_domain: str,
        access_token: str,
        price_rule: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._admin_rest_post(
            shop_domain=shop_domain,
            access_token=access_token,
            path="/price_rules.json",
            payload={"price_rule": price_rule},
            step="create_price_rule",
        )
        created = response.get("price_rule")
        if not isinstance(created, dict) or created.get("id") is None:
            raise ShopifyApiError(
                message="Shopify price_rule response is missing id",
                step="create_price_rule",
            )
        return created

    async def create_discount_code(
        self,
        *,
        shop_domain: str,
        access_token: str,
        price_rule_id: int | str,
        code: str,
    ) -> dict[str, Any]:
        response = await self._admin_rest_post(
            shop_domain=shop_domain,
            access_token=access_token,
            path=f"/price_rules/{price_rule_id}/discount_codes.json",
            payload={"discount_code": {"code": code}},
            step="create_discount_code",
        )
        created = response.get("discount_code")
        if not isinstance(created, dict):
            raise ShopifyApiError(
                message="Shopify discount_code response is missing discount_code",
                step="create_discount_code",
            )
        return created

    async def _admin_rest_post(
        self,
        *,
        shop_domain: str,
        access_token: str,
        path: str,
        payload: dict[str, Any],
        step: str,
    ) -> dict[str, Any]:
        url = f"https://{shop_domain}/admin/api/{self._admin_api_version}{path}"
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise ShopifyApiError(message=f"Network error while calling Shopify: {exc}", step=step) from exc

        if response.status_code >= 400:
            raise ShopifyApiError(
                message=f"Shopify API call failed ({response.status_code})",
                status_code=400 if response.status_code < 500 else 502,
                step=step,
                details=_response_body(response),
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ShopifyApiError(message="Shopify API returned invalid JSON", step=step) from exc

        if not isinstance(body, dict):
            raise ShopifyApiError(message="Shopify API response must be a JSON object", step=step)
        return body
