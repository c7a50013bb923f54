"""
Marketplace Service — チェックアウトセッション作成

ここでは何も永続化しない。item_id と buyer_email をメタデータとして
プロバイダに預け、決済完了後に照合エンジンがそれを受け取る。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis

from . import events
from .errors import ValidationError
from .payments import CheckoutRequest, PaymentProvider

logger = logging.getLogger(__name__)


async def create_checkout_session(
    provider: PaymentProvider,
    redis: aioredis.Redis | None,
    item_id: str,
    quantity: int,
    unit_price: int,
    buyer_email: str,
    name: str,
    description: str = "",
    image: str = "",
) -> str:
    """決済セッションを作成してリダイレクト URL を返す。"""
    if quantity <= 0:
        raise ValidationError("quantity must be positive")
    if unit_price <= 0:
        raise ValidationError("unit_price must be positive")

    created = await provider.create_session(
        CheckoutRequest(
            item_id=str(item_id),
            quantity=quantity,
            unit_price=unit_price,
            buyer_email=buyer_email,
            name=name,
            description=description,
            image=image,
        )
    )
    logger.info("Checkout session %s created for item %s by %s", created.session_id, item_id, buyer_email)

    await events.publish(redis, events.ORDER_EVENTS, events.CheckoutSessionCreated(
        session_id=created.session_id,
        item_id=str(item_id),
        buyer_email=buyer_email,
        quantity=quantity,
        unit_price=unit_price,
        timestamp=datetime.now(timezone.utc),
    ))
    return created.url
