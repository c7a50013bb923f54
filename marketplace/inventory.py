"""
Marketplace Service — 在庫ストア (Inventory Store)

在庫数を変更するのは conditional_decrement だけ。
読み取り → 書き込みの2段階ではなく、1つの UPDATE 文で
「在庫 >= 数量 のときだけ減らす」をアトミックに行う。
別々の決済が同じ商品を同時に買っても在庫は負にならない。
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ValidationError
from .schema import items


def _item_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "category": row.category,
        "description": row.description,
        "price": row.price,
        "stock": row.stock,
        "seller_email": row.seller_email,
        "image": row.image,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


# ── 在庫プリミティブ ──────────────────────────────


async def get_item(session: AsyncSession, item_id: str) -> dict | None:
    result = await session.execute(select(items).where(items.c.id == str(item_id)))
    row = result.fetchone()
    return _item_dict(row) if row else None


async def lock_item(session: AsyncSession, item_id: str) -> dict | None:
    """呼び出し側のトランザクション内で商品行を読み直し、コミットまで行ロックを保持する。"""
    result = await session.execute(
        select(items).where(items.c.id == str(item_id)).with_for_update()
    )
    row = result.fetchone()
    return _item_dict(row) if row else None


async def conditional_decrement(session: AsyncSession, item_id: str, quantity: int) -> bool:
    """
    在庫を quantity だけ減らす。減らす前の在庫が quantity 以上のときだけ適用し True を返す。

    コミットはしない。呼び出し側のトランザクションに参加する。
    """
    if quantity <= 0:
        raise ValidationError("quantity must be positive")
    result = await session.execute(
        update(items)
        .where(items.c.id == str(item_id), items.c.stock >= quantity)
        .values(stock=items.c.stock - quantity)
    )
    return result.rowcount == 1


# ── カタログ (出品者の CRUD) ──────────────────────


async def create_item(
    session: AsyncSession,
    seller_email: str,
    name: str,
    category: str,
    price: int,
    stock: int,
    description: str = "",
    image: str = "",
) -> dict:
    if price <= 0:
        raise ValidationError("price must be positive")
    if stock < 0:
        raise ValidationError("stock must not be negative")

    values = {
        "id": str(uuid4()),
        "name": name,
        "category": category,
        "description": description,
        "price": price,
        "stock": stock,
        "seller_email": seller_email,
        "image": image,
        "created_at": datetime.now(timezone.utc),
    }
    await session.execute(items.insert().values(**values))
    await session.commit()
    return await get_item(session, values["id"])


async def list_items(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(items).order_by(items.c.created_at.desc()))
    return [_item_dict(row) for row in result.fetchall()]


async def latest_items(session: AsyncSession, limit: int = 6) -> list[dict]:
    result = await session.execute(
        select(items).order_by(items.c.created_at.desc()).limit(limit)
    )
    return [_item_dict(row) for row in result.fetchall()]


async def search_items(session: AsyncSession, q: str) -> list[dict]:
    """名前またはカテゴリの部分一致（大文字小文字は区別しない）"""
    # % と _ は検索語の文字としてそのまま扱う
    escaped = q.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    result = await session.execute(
        select(items)
        .where(
            or_(
                func.lower(items.c.name).like(pattern, escape="\\"),
                func.lower(items.c.category).like(pattern, escape="\\"),
            )
        )
        .order_by(items.c.created_at.desc())
    )
    return [_item_dict(row) for row in result.fetchall()]


async def list_by_seller(session: AsyncSession, seller_email: str) -> list[dict]:
    result = await session.execute(
        select(items)
        .where(items.c.seller_email == seller_email)
        .order_by(items.c.created_at.desc())
    )
    return [_item_dict(row) for row in result.fetchall()]
