"""
Marketplace — FastAPI エントリポイント

購入者向けの注文エンドポイント。ここはルーティングだけを担当する。
判断はすべて OrderWorkflow が行い、lifespan が Settings から一度だけ組み立てる。

    uvicorn marketplace.main:app
"""

import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import schema
from .config import Settings, configure_logging, load_settings
from .errors import MarketplaceError
from .gateway import PaymentGatewayClient
from .identity import Caller, resolve_caller
from .inventory import InventoryLedger
from .notifications import OrderEventPublisher
from .orchestrator import LineRequest, OrderWorkflow
from .order_store import OrderStore

logger = logging.getLogger(__name__)


# ── リクエストモデル ─────────────────────────────


class PlaceOrderRequest(BaseModel):
    items: list[LineRequest] = Field(min_length=1)
    delivery_address: str = Field(min_length=1)


class ConfirmPaymentRequest(BaseModel):
    payment_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class SignatureRequest(BaseModel):
    intent_id: str
    payment_id: str


class SignatureVerifyRequest(SignatureRequest):
    signature: str


def get_workflow(request: Request) -> OrderWorkflow:
    return request.app.state.workflow


# ── 購入者向け注文エンドポイント ─────────────────

router = APIRouter(prefix="/api/consumer")


@router.post("/orders", status_code=201)
async def place_order(
    req: PlaceOrderRequest,
    caller: Caller = Depends(resolve_caller),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    placement = await workflow.create_order(caller, req.items, req.delivery_address)
    return {
        "order_id": placement.order.id,
        "status": placement.order.status.value,
        "payment_intent_id": placement.payment_intent_id,
        "gateway_public_key": placement.gateway_key_id,
        "order": placement.order.model_dump(mode="json"),
    }


@router.post("/orders/{order_id}/confirm-payment", dependencies=[Depends(resolve_caller)])
async def confirm_payment(
    order_id: str,
    req: ConfirmPaymentRequest,
    workflow: OrderWorkflow = Depends(get_workflow),
):
    order = await workflow.confirm_payment(order_id, req.payment_id, req.signature)
    return {"order_id": order.id, "status": order.status.value}


@router.get("/orders")
async def list_orders(
    caller: Caller = Depends(resolve_caller),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return [order.model_dump(mode="json") for order in await workflow.list_orders(caller)]


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    caller: Caller = Depends(resolve_caller),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    order = await workflow.get_order(order_id, caller)
    return order.model_dump(mode="json")


# ── 署名ツール (ゲートウェイのテスト用) ──────────

signature_router = APIRouter(prefix="/api/test/signatures")


def _require_signature_tools(request: Request) -> PaymentGatewayClient:
    if not request.app.state.settings.enable_signature_tools:
        raise HTTPException(404, "Not found")
    return request.app.state.workflow.gateway


@signature_router.post("")
async def generate_signature(
    req: SignatureRequest,
    gateway: PaymentGatewayClient = Depends(_require_signature_tools),
):
    return {
        "intent_id": req.intent_id,
        "payment_id": req.payment_id,
        "payload": f"{req.intent_id}|{req.payment_id}",
        "signature": gateway.compute_signature(req.intent_id, req.payment_id),
    }


@signature_router.post("/verify")
async def verify_signature(
    req: SignatureVerifyRequest,
    gateway: PaymentGatewayClient = Depends(_require_signature_tools),
):
    return {
        "intent_id": req.intent_id,
        "payment_id": req.payment_id,
        "is_valid": gateway.verify_signature(req.intent_id, req.payment_id, req.signature),
    }


# ── アプリ ───────────────────────────────────────


async def handle_marketplace_error(request: Request, exc: MarketplaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.error_code, "message": exc.message}},
    )


def create_app(
    settings: Settings | None = None,
    redis: aioredis.Redis | None = None,
    gateway_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    ``settings`` を省略すると起動時に環境変数から読む。
    ``redis`` と ``gateway_transport`` は実接続の差し替え用 (テストで使う)。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or load_settings()
        configure_logging(cfg)

        engine = create_async_engine(cfg.database_url, echo=False)
        if cfg.create_schema:
            await schema.create_all(engine)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        redis_pool = redis or aioredis.from_url(cfg.redis_url, decode_responses=True)

        workflow = OrderWorkflow(
            ledger=InventoryLedger(async_session),
            store=OrderStore(async_session),
            gateway=PaymentGatewayClient(
                cfg.gateway_base_url,
                cfg.gateway_key_id,
                cfg.gateway_key_secret,
                timeout=cfg.gateway_timeout_seconds,
                transport=gateway_transport,
            ),
            publisher=OrderEventPublisher(redis_pool),
            currency=cfg.currency,
            legacy_partial_reservation=cfg.legacy_partial_reservation,
            verify_payment_with_gateway=cfg.verify_payment_with_gateway,
        )
        app.state.settings = cfg
        app.state.workflow = workflow
        logger.info("Marketplace order service started")
        yield
        await workflow.wait_for_notifications()
        await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Marketplace Order Service", lifespan=lifespan)
    app.add_exception_handler(MarketplaceError, handle_marketplace_error)
    app.include_router(router)
    app.include_router(signature_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "marketplace-order-service"}

    return app


app = create_app()
