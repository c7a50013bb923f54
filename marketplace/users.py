"""
Marketplace Service — ユーザーと出品者申請

ロール変更と出品者申請の削除は同一トランザクション（両方か、どちらもか）。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import events
from .errors import NotFoundError, ValidationError
from .schema import ROLES, seller_requests, users

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "customer"


def _user_dict(row) -> dict:
    return {
        "email": row.email,
        "name": row.name,
        "role": row.role,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "last_login_at": row.last_login_at.isoformat() if row.last_login_at else None,
    }


def _request_dict(row) -> dict:
    return {
        "email": row.email,
        "status": row.status,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def get_user(session: AsyncSession, email: str) -> dict | None:
    result = await session.execute(select(users).where(users.c.email == email))
    row = result.fetchone()
    return _user_dict(row) if row else None


async def upsert_user(session: AsyncSession, email: str, name: str = "") -> dict:
    """初回ログインなら customer として作成、以降は last_login_at を更新する。"""
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(users).where(users.c.email == email).values(last_login_at=now)
    )
    if result.rowcount == 0:
        try:
            await session.execute(
                users.insert().values(
                    email=email, name=name, role=DEFAULT_ROLE,
                    created_at=now, last_login_at=now,
                )
            )
        except IntegrityError:
            # 同時ログインで先に作成された
            await session.rollback()
            await session.execute(
                update(users).where(users.c.email == email).values(last_login_at=now)
            )
    await session.commit()
    return await get_user(session, email)


async def get_role(session: AsyncSession, email: str) -> str:
    result = await session.execute(select(users.c.role).where(users.c.email == email))
    role = result.scalar_one_or_none()
    return role or DEFAULT_ROLE


async def list_users(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(users).order_by(users.c.created_at.desc()))
    return [_user_dict(row) for row in result.fetchall()]


async def create_seller_request(session: AsyncSession, email: str, name: str = "") -> tuple[bool, dict]:
    """
    保留中の申請は 1 アカウント 1 件まで。既存があればそれを返す。

    申請者のユーザー行がなければ先に作る。
    """
    await upsert_user(session, email, name)
    result = await session.execute(
        select(seller_requests).where(seller_requests.c.email == email)
    )
    row = result.fetchone()
    if row:
        return False, _request_dict(row)

    try:
        await session.execute(
            seller_requests.insert().values(
                email=email, status="pending", created_at=datetime.now(timezone.utc)
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        result = await session.execute(
            select(seller_requests).where(seller_requests.c.email == email)
        )
        return False, _request_dict(result.fetchone())

    result = await session.execute(
        select(seller_requests).where(seller_requests.c.email == email)
    )
    return True, _request_dict(result.fetchone())


async def list_seller_requests(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(seller_requests).order_by(seller_requests.c.created_at.asc())
    )
    return [_request_dict(row) for row in result.fetchall()]


async def set_role(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    email: str,
    role: str,
    changed_by: str,
) -> dict:
    """ロールを変更し、同じトランザクションで出品者申請を削除する。"""
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")

    result = await session.execute(
        update(users).where(users.c.email == email).values(role=role)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError(f"User {email} not found")
    await session.execute(delete(seller_requests).where(seller_requests.c.email == email))
    await session.commit()

    logger.info("Role of %s changed to %s by %s", email, role, changed_by)
    await events.publish(redis, events.USER_EVENTS, events.UserRoleChanged(
        email=email, role=role, changed_by=changed_by, timestamp=datetime.now(timezone.utc),
    ))
    return await get_user(session, email)
