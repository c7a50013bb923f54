"""
Marketplace Service — FastAPI エントリーポイント

照合エンジン(Reconciliation Engine)を中心に、ロールで絞り込んだ
読み取り・削除 API を提供する。

  ┌──────────┐  POST /checkout-sessions  ┌──────────┐
  │ Frontend │ ────────────────────────▶ │  Stripe  │
  │          │ ◀──── redirect_url ────── │ Checkout │
  │          │                           └────┬─────┘
  │          │  POST /reconcile-payment        │ (決済完了)
  │          │ ──────────▶ Reconciliation ◀────┘ fetch_session
  └──────────┘             Engine ──▶ items / orders (PostgreSQL)
                                  ──▶ Redis Pub/Sub (order_events)

ストレージ・決済プロバイダ・トークン検証・Redis は create_app に注入でき、
注入されなかったものは lifespan で設定から生成する。
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from . import checkout, events, inventory, ledger, reconciliation, users
from .auth import Identity, TokenVerifier, authorize, require_role
from .config import Settings
from .database import Database, session_scope
from .errors import (
    AuthorizationError,
    ItemNotFound,
    MarketplaceError,
    OrderNotFound,
    ValidationError,
)
from .payments import PaymentProvider, StripePaymentProvider

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class CheckoutSessionRequest(BaseModel):
    item_id: str
    quantity: int = 1
    unit_price: int
    name: str
    description: str = ""
    image: str = ""
    buyer_email: str | None = None


class ReconcileRequest(BaseModel):
    session_id: str


class CreateItemRequest(BaseModel):
    name: str
    category: str
    price: int
    stock: int
    description: str = ""
    image: str = ""


class UpsertUserRequest(BaseModel):
    name: str = ""


class RoleChangeRequest(BaseModel):
    email: str
    role: str


# ── Dependencies ─────────────────────────────────


@dataclass(frozen=True)
class Caller:
    identity: Identity
    role: str

    @property
    def email(self) -> str:
        return self.identity.email


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_session(database: Database = Depends(get_database)):
    async for session in session_scope(database):
        yield session


def get_identity(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Identity:
    return authorize(authorization, request.app.state.verifier)


async def get_caller(
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_session),
) -> Caller:
    return Caller(identity, await users.get_role(session, identity.email))


def role_required(*roles: str):
    async def dependency(caller: Caller = Depends(get_caller)) -> Caller:
        require_role(caller.identity, caller.role, *roles)
        return caller
    return dependency


def _own_scope(caller: Caller, email: str) -> None:
    """出品者は自分のデータだけ。admin は全員分を見られる。"""
    if caller.role != "admin" and caller.email != email.lower():
        raise AuthorizationError(f"{caller.email} cannot access data of {email}", role=caller.role)


def _parse_id(value: str) -> str:
    try:
        return str(UUID(value))
    except ValueError:
        raise ValidationError("Invalid ID") from None


# ── Application ──────────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    provider: PaymentProvider | None = None,
    verifier: TokenVerifier | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        owns_redis = state.redis is None
        if state.database is None:
            state.database = Database(settings.database_url)
        if state.provider is None:
            state.provider = StripePaymentProvider(
                settings.stripe_secret_key,
                settings.checkout_currency,
                settings.frontend_url,
            )
        if state.verifier is None:
            state.verifier = TokenVerifier.from_settings(settings)
        if owns_redis:
            state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)

        await state.database.connect()
        yield
        await state.database.close()
        if owns_redis:
            await state.redis.aclose()

    app = FastAPI(title="Marketplace Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.provider = provider
    app.state.verifier = verifier
    app.state.redis = redis

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # ── Checkout / Reconciliation ────────────────

    @app.post("/checkout-sessions")
    async def create_checkout_session(
        req: CheckoutSessionRequest,
        request: Request,
        identity: Identity = Depends(get_identity),
    ):
        """決済セッション作成（購入者はトークンの本人）"""
        if req.buyer_email and req.buyer_email.lower() != identity.email:
            raise AuthorizationError("buyer_email does not match the caller", role="customer")
        url = await checkout.create_checkout_session(
            request.app.state.provider,
            request.app.state.redis,
            item_id=req.item_id,
            quantity=req.quantity,
            unit_price=req.unit_price,
            buyer_email=identity.email,
            name=req.name,
            description=req.description,
            image=req.image,
        )
        return {"redirect_url": url}

    @app.post("/reconcile-payment")
    async def reconcile_payment(req: ReconcileRequest, request: Request):
        """
        決済完了の照合。ブラウザのリダイレクトとプロバイダのコールバックの
        両方から呼ばれうる。信頼の根拠はプロバイダからの取得結果なので認証は不要。
        """
        result = await reconciliation.reconcile(
            request.app.state.database,
            request.app.state.provider,
            request.app.state.redis,
            req.session_id,
        )
        return result.to_response()

    # ── Catalog ──────────────────────────────────

    @app.get("/items")
    async def list_items(session: AsyncSession = Depends(get_session)):
        return await inventory.list_items(session)

    @app.get("/items/latest")
    async def latest_items(
        limit: int = Query(6, ge=1, le=100),
        session: AsyncSession = Depends(get_session),
    ):
        return await inventory.latest_items(session, limit)

    @app.get("/items/search")
    async def search_items(q: str = "", session: AsyncSession = Depends(get_session)):
        return await inventory.search_items(session, q)

    @app.get("/items/{item_id}")
    async def get_item(item_id: str, session: AsyncSession = Depends(get_session)):
        item = await inventory.get_item(session, _parse_id(item_id))
        if not item:
            raise ItemNotFound()
        return item

    @app.post("/items")
    async def create_item(
        req: CreateItemRequest,
        caller: Caller = Depends(role_required("seller")),
        session: AsyncSession = Depends(get_session),
    ):
        item = await inventory.create_item(
            session,
            seller_email=caller.email,
            name=req.name,
            category=req.category,
            price=req.price,
            stock=req.stock,
            description=req.description,
            image=req.image,
        )
        logger.info("Item %s listed by %s", item["id"], caller.email)
        return item

    @app.get("/inventory/by-seller/{email}")
    async def inventory_by_seller(
        email: str,
        caller: Caller = Depends(role_required("seller", "admin")),
        session: AsyncSession = Depends(get_session),
    ):
        _own_scope(caller, email)
        return await inventory.list_by_seller(session, email.lower())

    # ── Orders ───────────────────────────────────

    @app.get("/orders/mine")
    async def my_orders(
        identity: Identity = Depends(get_identity),
        session: AsyncSession = Depends(get_session),
    ):
        return await ledger.find_by_buyer(session, identity.email)

    @app.get("/orders/by-seller/{email}")
    async def orders_by_seller(
        email: str,
        caller: Caller = Depends(role_required("seller", "admin")),
        session: AsyncSession = Depends(get_session),
    ):
        _own_scope(caller, email)
        return await ledger.find_by_seller(session, email.lower())

    @app.delete("/orders/{order_id}")
    async def delete_order(
        order_id: str,
        request: Request,
        caller: Caller = Depends(role_required("seller", "admin")),
        session: AsyncSession = Depends(get_session),
    ):
        order = await ledger.get_order(session, _parse_id(order_id))
        if not order:
            raise OrderNotFound()
        _own_scope(caller, order["seller_email"])
        deleted = await ledger.delete_order(session, order["id"])
        if not deleted:
            raise OrderNotFound()
        await events.publish(request.app.state.redis, events.ORDER_EVENTS, events.OrderDeleted(
            order_id=order["id"],
            deleted_by=caller.email,
            timestamp=datetime.now(timezone.utc),
        ))
        return {"deleted": True, "order_id": order["id"]}

    # ── Users / Seller requests ──────────────────

    @app.post("/users")
    async def upsert_user(
        req: UpsertUserRequest | None = None,
        identity: Identity = Depends(get_identity),
        session: AsyncSession = Depends(get_session),
    ):
        name = req.name if req and req.name else identity.name
        return await users.upsert_user(session, identity.email, name)

    @app.get("/users/role")
    async def get_user_role(caller: Caller = Depends(get_caller)):
        return {"role": caller.role}

    @app.get("/users")
    async def list_users(
        caller: Caller = Depends(role_required("admin")),
        session: AsyncSession = Depends(get_session),
    ):
        return await users.list_users(session)

    @app.patch("/users/role")
    async def change_role(
        req: RoleChangeRequest,
        request: Request,
        caller: Caller = Depends(role_required("admin")),
        session: AsyncSession = Depends(get_session),
    ):
        return await users.set_role(
            session, request.app.state.redis, req.email.lower(), req.role, caller.email
        )

    @app.post("/seller-requests")
    async def request_seller(
        identity: Identity = Depends(get_identity),
        session: AsyncSession = Depends(get_session),
    ):
        created, seller_request = await users.create_seller_request(session, identity.email, identity.name)
        return {"created": created, "request": seller_request}

    @app.get("/seller-requests")
    async def list_seller_requests(
        caller: Caller = Depends(role_required("admin")),
        session: AsyncSession = Depends(get_session),
    ):
        return await users.list_seller_requests(session)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "marketplace-service"}


app = create_app()
