"""
Shopify OAuth authorization-code flow.

State tokens are signed with the app's client secret and also recorded as
pending in a state store, so a callback is accepted only for a state this
service minted, for the same shop, within its lifetime, and only once.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from urllib.parse import urlencode

from sqlalchemy import delete
from sqlalchemy.orm import Session

from shop_connect.errors import InvalidState, MissingParameter
from shop_connect.models import OAuthState
from shop_connect.security import digests_match, normalize_shop_domain, sign_hex
from shop_connect.shopify_api import ShopifyApiClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationRequest:
    shop_domain: str
    correlation_id: str
    scopes: frozenset[str]
    redirect_uri: str


@dataclass(frozen=True)
class RedirectTarget:
    url: str
    state: str


@dataclass(frozen=True)
class AccessCredential:
    shop_domain: str
    access_token: str = field(repr=False)
    granted_scopes: frozenset[str]
    obtained_at: datetime
    correlation_id: str

    @property
    def scope_csv(self) -> str:
        return ",".join(sorted(self.granted_scopes))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}")


def _split_scopes(value: str) -> frozenset[str]:
    return frozenset(scope.strip() for scope in value.split(",") if scope.strip())


class StateSigner:
    def __init__(
        self,
        *,
        secret: str,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def mint(self, *, correlation_id: str, shop_domain: str) -> str:
        data = {
            "cid": correlation_id,
            "shop": shop_domain,
            "nonce": secrets.token_urlsafe(16),
            "iat": int(self._clock()),
        }
        raw = json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")
        encoded = _b64url_encode(raw)
        return f"{encoded}.{sign_hex(self._secret, encoded)}"

    def verify(self, state: str) -> dict[str, Any]:
        encoded, dot, signature = state.partition(".")
        if not encoded or not dot or not signature:
            raise InvalidState("Invalid OAuth state")
        if not digests_match(sign_hex(self._secret, encoded), signature):
            raise InvalidState("Invalid OAuth state")
        try:
            payload = json.loads(_b64url_decode(encoded))
        except ValueError as exc:
            raise InvalidState("Invalid OAuth state") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("iat"), int):
            raise InvalidState("Invalid OAuth state")
        if int(self._clock()) > payload["iat"] + self._ttl_seconds:
            raise InvalidState("OAuth state has expired")
        return payload


class StateStore(Protocol):
    def add(self, *, state: str, shop_domain: str, correlation_id: str) -> None: ...

    def consume(self, state: str) -> bool: ...


class SqlStateStore:
    """Pending states in the ``oauth_states`` table; ``consume`` is a single atomic delete."""

    def __init__(self, session: Session, *, ttl_seconds: int) -> None:
        self._session = session
        self._ttl_seconds = ttl_seconds

    def add(self, *, state: str, shop_domain: str, correlation_id: str) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._ttl_seconds)
        self._session.execute(delete(OAuthState).where(OAuthState.created_at < cutoff))
        self._session.add(OAuthState(state=state, shop_domain=shop_domain, correlation_id=correlation_id))
        self._session.commit()

    def consume(self, state: str) -> bool:
        result = self._session.execute(delete(OAuthState).where(OAuthState.state == state))
        self._session.commit()
        return result.rowcount == 1


class AuthorizationFlow:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        shop_domain_suffix: str,
        state_store: StateStore,
        shopify_api: ShopifyApiClient,
        state_ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._shop_domain_suffix = shop_domain_suffix
        self._state_store = state_store
        self._shopify_api = shopify_api
        self._signer = StateSigner(secret=client_secret, ttl_seconds=state_ttl_seconds, clock=clock)

    def initiate(
        self,
        shop_domain: str | None,
        correlation_id: str | None,
        scopes: Iterable[str],
        redirect_base_url: str,
    ) -> RedirectTarget:
        if not shop_domain or not correlation_id:
            raise MissingParameter("Missing 'shop' or 'brandId' query parameter")
        request = AuthorizationRequest(
            shop_domain=normalize_shop_domain(shop_domain, suffix=self._shop_domain_suffix),
            correlation_id=correlation_id,
            scopes=frozenset(scope for scope in scopes if scope),
            redirect_uri=f"{redirect_base_url.rstrip('/')}/callback",
        )
        if not request.scopes:
            raise MissingParameter("At least one OAuth scope is required")

        state = self._signer.mint(correlation_id=request.correlation_id, shop_domain=request.shop_domain)
        self._state_store.add(
            state=state,
            shop_domain=request.shop_domain,
            correlation_id=request.correlation_id,
        )
        query = urlencode(
            {
                "client_id": self._client_id,
                "scope": ",".join(sorted(request.scopes)),
                "redirect_uri": request.redirect_uri,
                "state": state,
            }
        )
        logger.info(
            "Starting Shopify OAuth",
            extra={"shop": request.shop_domain, "correlation_id": request.correlation_id},
        )
        return RedirectTarget(
            url=f"https://{request.shop_domain}/admin/oauth/authorize?{query}",
            state=state,
        )

    async def complete_callback(
        self,
        shop_domain: str | None,
        code: str | None,
        state: str | None,
    ) -> AccessCredential:
        if not shop_domain or not code or not state:
            raise MissingParameter("Missing 'shop', 'code' or 'state' in callback query")
        shop = normalize_shop_domain(shop_domain, suffix=self._shop_domain_suffix)

        claims = self._signer.verify(state)
        if claims.get("shop") != shop:
            raise InvalidState("OAuth state does not match the shop domain")
        correlation_id = claims.get("cid")
        if not isinstance(correlation_id, str) or not correlation_id:
            raise InvalidState("Invalid OAuth state")
        if not self._state_store.consume(state):
            logger.warning("Rejected unknown or reused OAuth state", extra={"shop": shop})
            raise InvalidState("Invalid OAuth state")

        access_token, scopes_csv = await self._shopify_api.exchange_code_for_access_token(
            shop_domain=shop,
            client_id=self._client_id,
            client_secret=self._client_secret,
            code=code,
        )
        credential = AccessCredential(
            shop_domain=shop,
            access_token=access_token,
            granted_scopes=_split_scopes(scopes_csv),
            obtained_at=datetime.now(timezone.utc),
            correlation_id=correlation_id,
        )
        logger.info(
            "Shopify OAuth success",
            extra={"shop": shop, "scope": credential.scope_csv, "correlation_id": correlation_id},
        )
        return credential
