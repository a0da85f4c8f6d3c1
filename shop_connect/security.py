from __future__ import annotations

import base64
import hashlib
import hmac
import re
from collections.abc import Sequence

from shop_connect.errors import InvalidShopDomain

_SHOP_LABEL_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def normalize_shop_domain(shop: str | None, *, suffix: str) -> str:
    normalized = (shop or "").strip().lower()
    label, dot, rest = normalized.partition(".")
    if not dot or rest != suffix or not _SHOP_LABEL_RE.fullmatch(label):
        raise InvalidShopDomain(f"shop must be a valid *.{suffix} domain")
    return normalized


def sign_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_oauth_hmac(query_items: Sequence[tuple[str, str]], *, secret: str) -> bool:
    supplied_hmac = None
    filtered: list[tuple[str, str]] = []
    for key, value in query_items:
        if key == "hmac":
            supplied_hmac = value
            continue
        if key == "signature":
            continue
        filtered.append((key, value))

    if not supplied_hmac:
        return False

    filtered.sort(key=lambda item: item[0])
    message = "&".join(f"{key}={value}" for key, value in filtered)
    return digests_match(sign_hex(secret, message), supplied_hmac)


def compute_webhook_digest(*, body: bytes, secret: bytes) -> str:
    digest = hmac.new(secret, body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def digests_match(expected: str, supplied: str) -> bool:
    expected_bytes = expected.encode("utf-8")
    supplied_bytes = supplied.encode("utf-8")
    if len(expected_bytes) != len(supplied_bytes):
        return False
    return hmac.compare_digest(expected_bytes, supplied_bytes)
