"""
Marketplace Service — イベント定義

コミット済みの事実(イベント)を Redis Pub/Sub に発行する。
イベントは過去形で命名し、不変(immutable)として扱う。
発行はコミット後に行い、失敗してもコマンドの結果は変わらない。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ORDER_EVENTS = "order_events"
INVENTORY_EVENTS = "inventory_events"
USER_EVENTS = "user_events"


class CheckoutSessionCreated(BaseModel):
    """決済セッションが作成された（永続化はまだ何もない）"""
    session_id: str
    item_id: str
    buyer_email: str
    quantity: int
    unit_price: int
    timestamp: datetime


class OrderCreated(BaseModel):
    """決済完了から注文が1件作成された"""
    order_id: str
    transaction_ref: str
    item_id: str
    buyer_email: str
    seller_email: str
    quantity: int
    unit_price: int
    backordered: bool
    timestamp: datetime


class OrderBackordered(BaseModel):
    """決済は完了したが在庫が足りず、手動の取り寄せ対応が必要"""
    order_id: str
    transaction_ref: str
    item_id: str
    quantity: int
    timestamp: datetime


class InventoryDecremented(BaseModel):
    """注文に伴って在庫が減った"""
    item_id: str
    order_id: str
    quantity: int
    timestamp: datetime


class OrderDeleted(BaseModel):
    order_id: str
    deleted_by: str
    timestamp: datetime


class UserRoleChanged(BaseModel):
    """ロール変更（保留中の出品者申請も同時に削除される）"""
    email: str
    role: str
    changed_by: str
    timestamp: datetime


async def publish(redis: aioredis.Redis | None, channel: str, event: BaseModel) -> None:
    """イベントを発行する。Redis 未設定・障害時はログのみ残す。"""
    if redis is None:
        return
    try:
        await redis.publish(
            channel,
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except Exception:
        logger.exception("Failed to publish %s on %s", type(event).__name__, channel)
