from __future__ import annotations

from typing import Any


class ShopConnectError(RuntimeError):
    """Base error rendered by the app as ``{"ok": false, "error": ...}``."""

    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.error = message
        if status_code is not None:
            self.status_code = status_code

    def to_content(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error}


class InvalidShopDomain(ShopConnectError):
    status_code = 400


class MissingParameter(ShopConnectError):
    status_code = 400


class InvalidParameter(ShopConnectError):
    status_code = 400


class InvalidState(ShopConnectError):
    status_code = 400


class TokenExchangeFailed(ShopConnectError):
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        upstream_body: Any = None,
    ) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body

    def to_content(self) -> dict[str, Any]:
        content = super().to_content()
        content["details"] = {"status": self.upstream_status, "body": self.upstream_body}
        return content


class MissingSignature(ShopConnectError):
    status_code = 401


class InvalidSignature(ShopConnectError):
    status_code = 401


class MalformedPayload(ShopConnectError):
    status_code = 400


class Misconfigured(ShopConnectError):
    status_code = 500


class DownstreamError(ShopConnectError):
    status_code = 502

    def __init__(self, message: str, *, status_code: int | None = None, details: Any = None) -> None:
        super().__init__(message, status_code=status_code)
        self.details = details

    def to_content(self) -> dict[str, Any]:
        content = super().to_content()
        if self.details is not None:
            content["details"] = self.details
        return content
