from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from shop_connect.base44 import Base44Client
from shop_connect.errors import DownstreamError, InvalidParameter, MissingParameter
from shop_connect.schemas import CreateDiscountRequest, CreateDiscountResponse
from shop_connect.security import normalize_shop_domain
from shop_connect.shopify_api import ShopifyApiClient

logger = logging.getLogger(__name__)


def build_affiliate_price_rule(*, code: str, percentage: float, starts_at: datetime) -> dict[str, Any]:
    # Shopify expects discounts as negative values.
    return {
        "title": f"Affiliate {code}",
        "target_type": "line_item",
        "target_selection": "all",
        "allocation_method": "across",
        "value_type": "percentage",
        "value": -abs(percentage),
        "customer_selection": "all",
        "once_per_customer": False,
        "usage_limit": None,
        "starts_at": starts_at.isoformat(),
    }


async def create_affiliate_discount(
    request: CreateDiscountRequest,
    *,
    base44: Base44Client,
    shopify_api: ShopifyApiClient,
    shop_domain_suffix: str,
) -> CreateDiscountResponse:
    if not request.brandId or not request.code or not request.percentage:
        raise MissingParameter("Missing brandId, code or percentage")
    if not 0 < request.percentage <= 100:
        raise InvalidParameter("percentage must be greater than 0 and at most 100")

    store = await base44.get_store(request.brandId)
    if store is None:
        raise DownstreamError("Store not found in Base44", status_code=404)
    access_token = store.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise DownstreamError("Store in Base44 has no access token", status_code=404)
    shop_domain = normalize_shop_domain(store.get("shop_domain"), suffix=shop_domain_suffix)

    price_rule = await shopify_api.create_price_rule(
        shop_domain=shop_domain,
        access_token=access_token,
        price_rule=build_affiliate_price_rule(
            code=request.code,
            percentage=request.percentage,
            starts_at=datetime.now(timezone.utc),
        ),
    )
    discount = await shopify_api.create_discount_code(
        shop_domain=shop_domain,
        access_token=access_token,
        price_rule_id=price_rule["id"],
        code=request.code,
    )
    logger.info(
        "Created affiliate discount",
        extra={"brand_id": request.brandId, "shop": shop_domain, "price_rule_id": price_rule["id"]},
    )
    return CreateDiscountResponse(
        brandId=request.brandId,
        shop=shop_domain,
        percentage=request.percentage,
        priceRule=price_rule,
        discount=discount,
    )
