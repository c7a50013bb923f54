"""
Marketplace Service — 決済照合エンジン (Reconciliation Engine)

完了した決済セッションを「注文 1 件 + 在庫減算 1 回」に変換する。
同じセッションに対して何度・同時に呼ばれても結果は同じ（冪等）。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. プロバイダからセッションを取得（完了状態・金額・メタデータ） │
  │  2. 未完了なら PaymentNotComplete（副作用なし）               │
  │  3. transaction_ref の注文があれば、それを返す（高速パス）     │
  │  4. 商品がなければ ItemNotFound（副作用なし）                  │
  │  5. 1 トランザクションで 在庫減算 + 注文 INSERT → COMMIT       │
  │     └─ 一意制約違反 = 同時実行の勝者がいる                     │
  │        → ロールバック（減算も戻る）して勝者の注文を返す         │
  └──────────────────────────────────────────────────────────────┘

冪等キーはセッション ID ではなく transaction_ref。
リトライ時にプロバイダが新しいセッション ID を発行しても、
実際に課金された決済は transaction_ref で一意に識別される。

在庫不足のまま決済が完了した場合は、注文は作成し（課金済みのため）
backordered=True で記録する。在庫は減らさない。
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

import redis.asyncio as aioredis

from . import events, inventory, ledger
from .database import Database
from .errors import ItemNotFound, PaymentNotComplete
from .payments import COMPLETE, PaymentProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    transaction_ref: str
    order_id: str
    created: bool
    backordered: bool

    def to_response(self) -> dict:
        data = asdict(self)
        data["transaction_reference"] = data.pop("transaction_ref")
        return data


async def reconcile(
    database: Database,
    provider: PaymentProvider,
    redis: aioredis.Redis | None,
    session_id: str,
) -> ReconcileResult:
    # 1. プロバイダ側が唯一の情報源（通信エラーはそのまま呼び出し側へ）
    payment = await provider.fetch_session(session_id)

    # 2. 完了していなければ何もしない
    if payment.status != COMPLETE or not payment.transaction_ref:
        raise PaymentNotComplete(
            f"Payment session {session_id} is {payment.status}",
            session_id=session_id,
            status=payment.status,
        )

    transaction_ref = payment.transaction_ref
    item_id = payment.metadata.get("item_id", "")
    buyer_email = payment.metadata.get("buyer_email") or payment.customer_email or ""
    quantity = payment.quantity

    async with database.session() as session:
        # 3. 照合済みなら既存の注文を返す（商品がその後削除されていても）
        existing = await ledger.find_by_transaction(session, transaction_ref)
        if existing is not None:
            return ReconcileResult(
                transaction_ref, existing["id"], False, existing["backordered"]
            )

        # 4. チェックアウト開始後に商品が削除されている場合
        item = await inventory.get_item(session, item_id)
        if item is None:
            raise ItemNotFound(f"Item {item_id} not found", item_id=item_id)

        # 5. 在庫減算と注文作成を同一トランザクションで
        decremented = await inventory.conditional_decrement(session, item_id, quantity)
        if not decremented and await inventory.lock_item(session, item_id) is None:
            # 読み取り後に商品が削除された。在庫不足ではない
            await session.rollback()
            raise ItemNotFound(f"Item {item_id} not found", item_id=item_id)
        order = ledger.new_order(
            item,
            transaction_ref=transaction_ref,
            session_id=payment.session_id,
            buyer_email=buyer_email,
            quantity=quantity,
            unit_price=payment.unit_price,
            backordered=not decremented,
        )
        created, order = await ledger.insert_if_absent(session, order)
        if not created:
            # 同時実行の勝者の注文。こちらの減算はロールバック済み
            return ReconcileResult(transaction_ref, order["id"], False, order["backordered"])

        await session.commit()

    logger.info(
        "Order %s created for transaction %s (item=%s, qty=%d)",
        order["id"], transaction_ref, item_id, quantity,
    )
    now = datetime.now(timezone.utc)
    await events.publish(redis, events.ORDER_EVENTS, events.OrderCreated(
        order_id=order["id"],
        transaction_ref=transaction_ref,
        item_id=item_id,
        buyer_email=buyer_email,
        seller_email=order["seller_email"],
        quantity=quantity,
        unit_price=order["unit_price"],
        backordered=order["backordered"],
        timestamp=now,
    ))

    if decremented:
        await events.publish(redis, events.INVENTORY_EVENTS, events.InventoryDecremented(
            item_id=item_id, order_id=order["id"], quantity=quantity, timestamp=now,
        ))
    else:
        logger.warning(
            "Order %s is backordered: item %s has insufficient stock for qty=%d",
            order["id"], item_id, quantity,
        )
        await events.publish(redis, events.ORDER_EVENTS, events.OrderBackordered(
            order_id=order["id"],
            transaction_ref=transaction_ref,
            item_id=item_id,
            quantity=quantity,
            timestamp=now,
        ))

    return ReconcileResult(transaction_ref, order["id"], True, order["backordered"])
