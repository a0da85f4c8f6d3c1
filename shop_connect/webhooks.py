"""
Shopify webhook authenticity verification.

Verification runs over the exact bytes received. An envelope can only be built
from ``bytes``, so a parsed or re-serialized body never reaches the digest.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from shop_connect.errors import InvalidSignature, MalformedPayload, Misconfigured, MissingSignature
from shop_connect.security import compute_webhook_digest, digests_match

HMAC_HEADER = "x-shopify-hmac-sha256"
TOPIC_HEADER = "x-shopify-topic"
SHOP_HEADER = "x-shopify-shop-domain"
WEBHOOK_ID_HEADER = "x-shopify-webhook-id"


@dataclass(frozen=True)
class WebhookEnvelope:
    topic: str
    shop_domain: str
    signature_header: str | None
    raw_body: bytes
    webhook_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.raw_body, bytes):
            raise TypeError("raw_body must be the exact bytes received, not a decoded or parsed body")

    @classmethod
    def from_headers(cls, *, headers: Any, raw_body: bytes) -> "WebhookEnvelope":
        return cls(
            topic=headers.get(TOPIC_HEADER) or "",
            shop_domain=headers.get(SHOP_HEADER) or "",
            signature_header=headers.get(HMAC_HEADER),
            raw_body=raw_body,
            webhook_id=headers.get(WEBHOOK_ID_HEADER),
        )


@dataclass(frozen=True)
class VerifiedWebhook:
    topic: str
    shop_domain: str
    payload: Any
    webhook_id: str | None = None

    @property
    def event_id(self) -> str | None:
        if self.webhook_id:
            return self.webhook_id
        if isinstance(self.payload, dict) and self.payload.get("id") is not None:
            return str(self.payload["id"])
        return None


def verify_webhook(envelope: WebhookEnvelope, shared_secret: bytes) -> VerifiedWebhook:
    if not shared_secret:
        raise Misconfigured("Webhook signing secret is not configured")
    if not envelope.signature_header:
        raise MissingSignature("Missing X-Shopify-Hmac-Sha256 header")

    expected = compute_webhook_digest(body=envelope.raw_body, secret=shared_secret)
    if not digests_match(expected, envelope.signature_header):
        raise InvalidSignature("Invalid HMAC")

    try:
        payload = json.loads(envelope.raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayload("Invalid JSON payload") from exc

    return VerifiedWebhook(
        topic=envelope.topic,
        shop_domain=envelope.shop_domain,
        payload=payload,
        webhook_id=envelope.webhook_id,
    )


class WebhookVerifier:
    def __init__(self, shared_secret: bytes) -> None:
        self._shared_secret = shared_secret

    def verify(self, envelope: WebhookEnvelope) -> VerifiedWebhook:
        return verify_webhook(envelope, self._shared_secret)
