from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class CreateDiscountRequest(BaseModel):
    brandId: str | None = None
    code: str | None = None
    percentage: float | None = None


class CreateDiscountResponse(BaseModel):
    ok: bool = True
    message: str = "Discount created successfully"
    brandId: str
    shop: str
    percentage: float
    priceRule: dict[str, Any]
    discount: dict[str, Any]


class OAuthCallbackResponse(BaseModel):
    ok: bool = True
    message: str = "Shopify shop connected successfully"
    shop: str
    scope: list[str] = Field(default_factory=list)
    brandId: str
    base44: Any = None
    base44Error: str | None = None
