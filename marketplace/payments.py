"""
Marketplace Service — 決済プロバイダ

PaymentProvider はプロバイダ SDK を隠すインターフェース。
  create_session … Checkout セッションを作成し、リダイレクト URL を返す
  fetch_session  … セッションを取得する（決済完了の唯一の情報源）

本番は Stripe Checkout、テストはインメモリ実装を注入する。
item_id / buyer_email はメタデータとして埋め込み、完了時にそのまま返ってくる。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import stripe

from .errors import CheckoutRejected, PaymentSessionNotFound, UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETE = "complete"
FAILED = "failed"


@dataclass(frozen=True)
class CheckoutRequest:
    item_id: str
    quantity: int
    unit_price: int
    buyer_email: str
    name: str
    description: str = ""
    image: str = ""


@dataclass(frozen=True)
class CreatedSession:
    session_id: str
    url: str


@dataclass(frozen=True)
class PaymentSession:
    """プロバイダ側のセッション。読み取り専用で、こちらでは生成しない。"""
    session_id: str
    status: str
    transaction_ref: str | None
    amount_total: int
    quantity: int
    customer_email: str | None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def unit_price(self) -> int:
        return self.amount_total // max(self.quantity, 1)


class PaymentProvider(ABC):
    @abstractmethod
    async def create_session(self, request: CheckoutRequest) -> CreatedSession:
        ...

    @abstractmethod
    async def fetch_session(self, session_id: str) -> PaymentSession:
        ...


# Stripe のうち、リトライで回復しうるもの
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class StripePaymentProvider(PaymentProvider):
    """Stripe Checkout 実装。SDK は同期 API なのでワーカースレッドで呼ぶ。"""

    def __init__(self, api_key: str, currency: str, frontend_url: str) -> None:
        self.api_key = api_key
        self.currency = currency
        self.frontend_url = frontend_url.rstrip("/")

    async def create_session(self, request: CheckoutRequest) -> CreatedSession:
        product_data = {"name": request.name}
        if request.description:
            product_data["description"] = request.description
        if request.image:
            product_data["images"] = [request.image]

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self.api_key,
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": product_data,
                            "unit_amount": request.unit_price,
                        },
                        "quantity": request.quantity,
                    }
                ],
                customer_email=request.buyer_email,
                metadata={
                    "item_id": request.item_id,
                    "buyer_email": request.buyer_email,
                    "quantity": str(request.quantity),
                },
                success_url=f"{self.frontend_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.frontend_url}/items/{request.item_id}",
            )
        except _TRANSIENT_ERRORS as e:
            logger.warning("Stripe unavailable while creating session: %s", e)
            raise UpstreamUnavailable(str(e)) from e
        except stripe.StripeError as e:
            raise CheckoutRejected(getattr(e, "user_message", None) or str(e)) from e

        return CreatedSession(session_id=session.id, url=session.url)

    async def fetch_session(self, session_id: str) -> PaymentSession:
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve,
                session_id,
                api_key=self.api_key,
            )
        except stripe.InvalidRequestError as e:
            raise PaymentSessionNotFound(str(e)) from e
        except (*_TRANSIENT_ERRORS, stripe.StripeError) as e:
            logger.warning("Stripe unavailable while fetching %s: %s", session_id, e)
            raise UpstreamUnavailable(str(e)) from e

        return session_from_stripe(session.to_dict())


def session_from_stripe(session: dict) -> PaymentSession:
    """Stripe の checkout.Session（dict 化済み）を PaymentSession に変換する。"""
    payment_status = session.get("payment_status")
    if payment_status in ("paid", "no_payment_required"):
        status = COMPLETE
    elif session.get("status") == "expired":
        status = FAILED
    else:
        status = PENDING

    payment_intent = session.get("payment_intent")
    if payment_intent is not None and not isinstance(payment_intent, str):
        payment_intent = payment_intent["id"]

    # 全額割引などで PaymentIntent がないときはセッション ID を参照キーにする
    if payment_status == "no_payment_required" and not payment_intent:
        payment_intent = session["id"]

    metadata = dict(session.get("metadata") or {})
    try:
        quantity = int(metadata.get("quantity") or 1)
    except ValueError:
        raise ValidationError(
            f"Malformed quantity in session {session['id']}: {metadata['quantity']!r}"
        ) from None
    details = session.get("customer_details") or {}
    return PaymentSession(
        session_id=session["id"],
        status=status,
        transaction_ref=payment_intent if status == COMPLETE else None,
        amount_total=session.get("amount_total") or 0,
        quantity=quantity,
        customer_email=details.get("email") or session.get("customer_email"),
        metadata=metadata,
    )
