import asyncio
import json
from dataclasses import replace

import httpx
import jwt
import pytest

from marketplace import inventory, users
from marketplace.auth import TokenVerifier
from marketplace.config import Settings
from marketplace.database import Database
from marketplace.errors import CheckoutRejected, PaymentSessionNotFound, UpstreamUnavailable
from marketplace.main import create_app
from marketplace.payments import (
    COMPLETE,
    FAILED,
    PENDING,
    CheckoutRequest,
    CreatedSession,
    PaymentProvider,
    PaymentSession,
)

TEST_SECRET = "marketplace-test-secret-0123456789abcdef"
SELLER = "seller@example.com"
BUYER = "buyer@example.com"
ADMIN = "admin@example.com"


class FakePaymentProvider(PaymentProvider):
    """インメモリの決済プロバイダ。テストからセッションの状態を操作する。"""

    def __init__(self) -> None:
        self.sessions: dict[str, PaymentSession] = {}
        self.created: list[CheckoutRequest] = []
        self.fetch_calls = 0
        self.unavailable = False
        self.reject_with: str | None = None

    async def create_session(self, request: CheckoutRequest) -> CreatedSession:
        if self.reject_with:
            raise CheckoutRejected(self.reject_with)
        self.created.append(request)
        session_id = f"cs_test_{len(self.created)}"
        self.sessions[session_id] = PaymentSession(
            session_id=session_id,
            status=PENDING,
            transaction_ref=None,
            amount_total=request.unit_price * request.quantity,
            quantity=request.quantity,
            customer_email=request.buyer_email,
            metadata={
                "item_id": request.item_id,
                "buyer_email": request.buyer_email,
                "quantity": str(request.quantity),
            },
        )
        return CreatedSession(session_id, f"https://checkout.test/pay/{session_id}")

    async def fetch_session(self, session_id: str) -> PaymentSession:
        self.fetch_calls += 1
        # 同時実行テストで呼び出し同士が交互に進むようにする
        await asyncio.sleep(0)
        if self.unavailable:
            raise UpstreamUnavailable("provider timed out")
        if session_id not in self.sessions:
            raise PaymentSessionNotFound()
        return self.sessions[session_id]

    def complete(self, session_id: str, transaction_ref: str) -> None:
        self.sessions[session_id] = replace(
            self.sessions[session_id], status=COMPLETE, transaction_ref=transaction_ref
        )

    def fail(self, session_id: str) -> None:
        self.sessions[session_id] = replace(self.sessions[session_id], status=FAILED)

    def clone(self, session_id: str, new_session_id: str) -> None:
        """同じ決済を指す別のセッション ID（リトライされたチェックアウト）"""
        self.sessions[new_session_id] = replace(
            self.sessions[session_id], session_id=new_session_id
        )


class RecordingRedis:
    def __init__(self) -> None:
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.messages.append((channel, json.loads(message)))
        return 0

    def event_types(self, channel: str | None = None) -> list[str]:
        return [m["event_type"] for c, m in self.messages if channel in (None, c)]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}",
        auth_secret=TEST_SECRET,
        log_level="DEBUG",
    )


@pytest.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def verifier():
    return TokenVerifier(secret=TEST_SECRET)


@pytest.fixture
async def client(settings, database, provider, verifier, redis):
    app = create_app(
        settings, database=database, provider=provider, verifier=verifier, redis=redis
    )
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


def make_token(email: str, name: str = "") -> str:
    return jwt.encode({"email": email, "name": name}, TEST_SECRET, algorithm="HS256")


def auth_headers(email: str) -> dict:
    return {"Authorization": f"Bearer {make_token(email)}"}


@pytest.fixture
def make_user(database, redis):
    async def _make_user(email: str, role: str = "customer") -> dict:
        async with database.session() as session:
            await users.upsert_user(session, email)
            if role != "customer":
                await users.set_role(session, redis, email, role, changed_by="fixture")
            return await users.get_user(session, email)
    return _make_user


@pytest.fixture
def make_item(database):
    async def _make_item(stock: int = 3, price: int = 1500, seller: str = SELLER, **kwargs) -> dict:
        async with database.session() as session:
            return await inventory.create_item(
                session,
                seller_email=seller,
                name=kwargs.pop("name", "Dune"),
                category=kwargs.pop("category", "Science Fiction"),
                price=price,
                stock=stock,
                **kwargs,
            )
    return _make_item


@pytest.fixture
def paid_session(provider):
    """商品に対するチェックアウトを作成し、transaction_ref 付きで完了させる。"""
    async def _paid_session(item: dict, transaction_ref: str, buyer: str = BUYER, quantity: int = 1) -> str:
        created = await provider.create_session(
            CheckoutRequest(
                item_id=item["id"],
                quantity=quantity,
                unit_price=item["price"],
                buyer_email=buyer,
                name=item["name"],
            )
        )
        provider.complete(created.session_id, transaction_ref)
        return created.session_id
    return _paid_session
