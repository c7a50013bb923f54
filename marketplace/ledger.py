"""
Marketplace Service — 注文台帳 (Order Ledger)

orders.transaction_ref の UNIQUE 制約が「1 決済 = 1 注文」の最終的な保証。
アプリ側の事前チェックは高速化のためだけで、安全性は DB の制約が担う。
同じ transaction_ref の INSERT が競合すると一意制約違反で失敗する
→ ロールバックして勝者の行を返す。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import StorageConflict
from .schema import orders

logger = logging.getLogger(__name__)


def _order_dict(row) -> dict:
    return {
        "id": row.id,
        "item_id": row.item_id,
        "transaction_ref": row.transaction_ref,
        "session_id": row.session_id,
        "buyer_email": row.buyer_email,
        "seller_email": row.seller_email,
        "item_name": row.item_name,
        "category": row.category,
        "image": row.image,
        "quantity": row.quantity,
        "unit_price": row.unit_price,
        "status": row.status,
        "backordered": bool(row.backordered),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def new_order(
    item: dict,
    transaction_ref: str,
    session_id: str,
    buyer_email: str,
    quantity: int,
    unit_price: int,
    backordered: bool = False,
) -> dict:
    """
    注文行を組み立てる。

    出品者・商品名・カテゴリ・画像は購入時点のスナップショット。
    単価は商品の現在価格ではなく、実際に決済された金額を使う。
    """
    return {
        "id": str(uuid4()),
        "item_id": item["id"],
        "transaction_ref": transaction_ref,
        "session_id": session_id,
        "buyer_email": buyer_email,
        "seller_email": item["seller_email"],
        "item_name": item["name"],
        "category": item["category"],
        "image": item["image"],
        "quantity": quantity,
        "unit_price": unit_price,
        "status": "pending",
        "backordered": backordered,
        "created_at": datetime.now(timezone.utc),
    }


async def insert_if_absent(session: AsyncSession, order: dict) -> tuple[bool, dict]:
    """
    transaction_ref をキーに注文を INSERT する。

    コミットは呼び出し側が行う。一意制約違反のときはトランザクション全体を
    ロールバックし（呼び出し側の未コミットの変更も破棄される）、
    既存の注文を created=False で返す。
    """
    try:
        await session.execute(orders.insert().values(**order))
    except IntegrityError as e:
        await session.rollback()
        existing = await find_by_transaction(session, order["transaction_ref"])
        if existing is None:
            # transaction_ref 以外の制約違反
            raise StorageConflict(str(e.orig)) from e
        logger.warning(
            "Order for transaction %s already exists (order_id=%s)",
            order["transaction_ref"],
            existing["id"],
        )
        return False, existing

    return True, {
        **order,
        "created_at": order["created_at"].isoformat(),
    }


async def find_by_transaction(session: AsyncSession, transaction_ref: str) -> dict | None:
    result = await session.execute(
        select(orders).where(orders.c.transaction_ref == transaction_ref)
    )
    row = result.fetchone()
    return _order_dict(row) if row else None


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == str(order_id)))
    row = result.fetchone()
    return _order_dict(row) if row else None


async def find_by_buyer(session: AsyncSession, buyer_email: str) -> list[dict]:
    result = await session.execute(
        select(orders)
        .where(orders.c.buyer_email == buyer_email)
        .order_by(orders.c.created_at.desc())
    )
    return [_order_dict(row) for row in result.fetchall()]


async def find_by_seller(session: AsyncSession, seller_email: str) -> list[dict]:
    result = await session.execute(
        select(orders)
        .where(orders.c.seller_email == seller_email)
        .order_by(orders.c.created_at.desc())
    )
    return [_order_dict(row) for row in result.fetchall()]


async def delete_order(session: AsyncSession, order_id: str) -> bool:
    result = await session.execute(delete(orders).where(orders.c.id == str(order_id)))
    await session.commit()
    return result.rowcount == 1
