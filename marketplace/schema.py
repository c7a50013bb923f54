"""
Marketplace Service — テーブル定義

一意制約がこのサービスの整合性の要:
  - orders.transaction_ref  … 1 決済 = 1 注文（冪等キー）
  - users.email / seller_requests.email … 1 アカウント 1 行
在庫数は CHECK 制約でも負にならないことを保証する。
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

ROLES = ("customer", "seller", "admin")

items = Table(
    "items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("category", String(100), nullable=False, default=""),
    Column("description", Text, nullable=False, default=""),
    Column("price", Integer, nullable=False),
    Column("stock", Integer, nullable=False),
    Column("seller_email", String(255), nullable=False, index=True),
    Column("image", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("stock >= 0", name="ck_items_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("item_id", String(36), nullable=False, index=True),
    Column("transaction_ref", String(255), nullable=False, unique=True),
    Column("session_id", String(255), nullable=False),
    Column("buyer_email", String(255), nullable=False, index=True),
    Column("seller_email", String(255), nullable=False, index=True),
    Column("item_name", String(255), nullable=False),
    Column("category", String(100), nullable=False, default=""),
    Column("image", Text, nullable=False, default=""),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Integer, nullable=False),
    Column("status", String(20), nullable=False, default="pending"),
    Column("backordered", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

users = Table(
    "users",
    metadata,
    Column("email", String(255), primary_key=True),
    Column("name", String(255), nullable=False, default=""),
    Column("role", String(20), nullable=False, default="customer"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("last_login_at", DateTime(timezone=True), nullable=False),
)

seller_requests = Table(
    "seller_requests",
    metadata,
    Column("email", String(255), primary_key=True),
    Column("status", String(20), nullable=False, default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
