from __future__ import annotations

import dataclasses
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shop_connect.base44 import Base44Client
from shop_connect.config import Settings, settings
from shop_connect.db import create_state_tables, get_session
from shop_connect.discounts import create_affiliate_discount
from shop_connect.errors import DownstreamError, InvalidSignature, Misconfigured, MissingParameter, ShopConnectError
from shop_connect.models import ProcessedWebhookEvent
from shop_connect.oauth import AuthorizationFlow, SqlStateStore
from shop_connect.schemas import CreateDiscountRequest, CreateDiscountResponse, OAuthCallbackResponse
from shop_connect.security import normalize_shop_domain, verify_oauth_hmac
from shop_connect.shopify_api import ShopifyApiClient
from shop_connect.webhooks import VerifiedWebhook, WebhookEnvelope, WebhookVerifier

logger = logging.getLogger(__name__)

shopify_api = ShopifyApiClient(
    timeout=settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS,
    admin_api_version=settings.SHOPIFY_ADMIN_API_VERSION,
)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_settings() -> Settings:
    return settings


def get_shopify_api() -> ShopifyApiClient:
    return shopify_api


def get_base44_client(app_settings: Settings = Depends(get_settings)) -> Base44Client:
    return Base44Client.from_settings(app_settings)


def get_authorization_flow(
    session: Session = Depends(get_session),
    app_settings: Settings = Depends(get_settings),
    shopify: ShopifyApiClient = Depends(get_shopify_api),
) -> AuthorizationFlow:
    client_id, client_secret = app_settings.require_oauth_credentials()
    return AuthorizationFlow(
        client_id=client_id,
        client_secret=client_secret,
        shop_domain_suffix=app_settings.SHOPIFY_SHOP_DOMAIN_SUFFIX,
        state_store=SqlStateStore(session, ttl_seconds=app_settings.OAUTH_STATE_TTL_SECONDS),
        shopify_api=shopify,
        state_ttl_seconds=app_settings.OAUTH_STATE_TTL_SECONDS,
    )


@asynccontextmanager
async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
    create_state_tables()
    yield


def create_app() -> FastAPI:
    configure_logging(settings.LOG_LEVEL)
    app = FastAPI(
        title="Shop Connect",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )

    @app.exception_handler(ShopConnectError)
    async def shop_connect_error_handler(_request: Request, exc: ShopConnectError) -> ORJSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed", extra={"error": exc.error, "error_type": type(exc).__name__})
        return ORJSONResponse(status_code=exc.status_code, content=exc.to_content())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return ORJSONResponse(status_code=500, content={"ok": False, "error": "Internal server error"})

    @app.get("/health")
    def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/shopify/auth/start")
    def auth_start(
        shop: str | None = None,
        brandId: str | None = None,
        app_settings: Settings = Depends(get_settings),
        flow: AuthorizationFlow = Depends(get_authorization_flow),
    ):
        if not app_settings.scope_set:
            raise Misconfigured("Missing SHOPIFY_SCOPES env var")
        target = flow.initiate(
            shop,
            brandId,
            app_settings.scope_set,
            f"{app_settings.backend_base_url}/shopify/auth",
        )
        return RedirectResponse(url=target.url, status_code=302)

    @app.get("/shopify/auth/callback", response_model=OAuthCallbackResponse)
    async def auth_callback(
        request: Request,
        app_settings: Settings = Depends(get_settings),
        flow: AuthorizationFlow = Depends(get_authorization_flow),
        base44: Base44Client = Depends(get_base44_client),
    ):
        shop = request.query_params.get("shop")
        code = request.query_params.get("code")
        state_value = request.query_params.get("state")
        if not shop or not code or not state_value:
            raise MissingParameter("Missing 'shop', 'code' or 'state' in callback query")

        if app_settings.SHOPIFY_VERIFY_CALLBACK_HMAC:
            _, client_secret = app_settings.require_oauth_credentials()
            if not verify_oauth_hmac(list(request.query_params.multi_items()), secret=client_secret):
                raise InvalidSignature("Invalid OAuth HMAC")

        credential = await flow.complete_callback(shop, code, state_value)

        base44_result = None
        base44_error = None
        if not base44.can_save_connections:
            logger.warning("BASE44_SAVE_SHOPIFY_URL or BASE44_API_KEY not set, skipping save to Base44")
        else:
            try:
                base44_result = await base44.save_shopify_connection(credential)
                logger.info("Saved Shopify connection in Base44", extra={"shop": credential.shop_domain})
            except DownstreamError as exc:
                logger.error(
                    "Error saving Shopify connection in Base44",
                    extra={"shop": credential.shop_domain, "error": exc.error},
                )
                base44_error = exc.error

        return OAuthCallbackResponse(
            shop=credential.shop_domain,
            scope=sorted(credential.granted_scopes),
            brandId=credential.correlation_id,
            base44=base44_result,
            base44Error=base44_error,
        )

    @app.post("/shopify/webhooks/orders/create")
    async def orders_create_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        session: Session = Depends(get_session),
        app_settings: Settings = Depends(get_settings),
        base44: Base44Client = Depends(get_base44_client),
    ):
        return await _accept_webhook(
            request,
            background_tasks=background_tasks,
            session=session,
            app_settings=app_settings,
            base44=base44,
            default_topic="orders/create",
        )

    @app.post("/shopify/webhooks")
    async def generic_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        session: Session = Depends(get_session),
        app_settings: Settings = Depends(get_settings),
        base44: Base44Client = Depends(get_base44_client),
    ):
        return await _accept_webhook(
            request,
            background_tasks=background_tasks,
            session=session,
            app_settings=app_settings,
            base44=base44,
        )

    @app.post("/shopify/discounts", response_model=CreateDiscountResponse)
    async def create_discount(
        payload: CreateDiscountRequest,
        app_settings: Settings = Depends(get_settings),
        shopify: ShopifyApiClient = Depends(get_shopify_api),
        base44: Base44Client = Depends(get_base44_client),
    ):
        return await create_affiliate_discount(
            payload,
            base44=base44,
            shopify_api=shopify,
            shop_domain_suffix=app_settings.SHOPIFY_SHOP_DOMAIN_SUFFIX,
        )

    @app.api_route("/base44/ping", methods=["GET", "POST"])
    async def ping_base44(base44: Base44Client = Depends(get_base44_client)):
        result = await base44.ping()
        logger.info("Base44 ping succeeded")
        return {"ok": True, "base44": result}

    return app


async def _accept_webhook(
    request: Request,
    *,
    background_tasks: BackgroundTasks,
    session: Session,
    app_settings: Settings,
    base44: Base44Client,
    default_topic: str | None = None,
) -> dict[str, bool]:
    # Read the body before anything parses it; the digest covers these exact bytes.
    raw_body = await request.body()
    envelope = WebhookEnvelope.from_headers(headers=request.headers, raw_body=raw_body)
    logger.info(
        "Webhook received",
        extra={"topic": envelope.topic, "shop": envelope.shop_domain, "length": len(raw_body)},
    )

    verified = WebhookVerifier(app_settings.require_webhook_secret()).verify(envelope)

    topic = verified.topic or default_topic
    if not topic:
        raise MissingParameter("Missing x-shopify-topic header")
    if not verified.shop_domain:
        raise MissingParameter("Missing x-shopify-shop-domain header")
    verified = dataclasses.replace(
        verified,
        topic=topic,
        shop_domain=normalize_shop_domain(verified.shop_domain, suffix=app_settings.SHOPIFY_SHOP_DOMAIN_SUFFIX),
    )

    if _is_duplicate_delivery(session, verified):
        logger.info(
            "Duplicate webhook delivery",
            extra={"topic": verified.topic, "shop": verified.shop_domain, "event_id": verified.event_id},
        )
        return {"ok": True, "duplicate": True}

    if base44.can_forward_webhooks:
        background_tasks.add_task(_forward_webhook, base44, verified)
    else:
        logger.info(
            "Webhook verified, forwarding not configured",
            extra={"topic": verified.topic, "shop": verified.shop_domain},
        )
    return {"ok": True}


def _is_duplicate_delivery(session: Session, webhook: VerifiedWebhook) -> bool:
    event_id = webhook.event_id
    if not event_id:
        return False

    existing = session.scalars(
        select(ProcessedWebhookEvent).where(
            ProcessedWebhookEvent.shop_domain == webhook.shop_domain,
            ProcessedWebhookEvent.topic == webhook.topic,
            ProcessedWebhookEvent.event_id == event_id,
        )
    ).first()
    if existing:
        return True

    session.add(
        ProcessedWebhookEvent(
            shop_domain=webhook.shop_domain,
            topic=webhook.topic,
            event_id=event_id,
            status="accepted",
        )
    )
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return True
    return False


async def _forward_webhook(base44: Base44Client, webhook: VerifiedWebhook) -> None:
    try:
        await base44.forward_webhook(webhook)
    except DownstreamError as exc:
        logger.error(
            "Error forwarding webhook to Base44",
            extra={"topic": webhook.topic, "shop": webhook.shop_domain, "error": exc.error},
        )
        return
    logger.info("Forwarded webhook to Base44", extra={"topic": webhook.topic, "shop": webhook.shop_domain})


app = create_app()
