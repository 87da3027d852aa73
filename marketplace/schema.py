"""
Marketplace — データベーススキーマ

PostgreSQL と SQLite で共通の素の DDL。
タイムスタンプは ISO-8601 文字列で保存し、どちらのエンジンでも同じ値で読み戻す。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id                 VARCHAR(64) PRIMARY KEY,
        owner_id           VARCHAR(64) NOT NULL,
        name               VARCHAR(255) NOT NULL,
        unit_price         DOUBLE PRECISION NOT NULL,
        available_quantity DOUBLE PRECISION NOT NULL CHECK (available_quantity >= 0),
        updated_at         VARCHAR(40)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                  VARCHAR(64) PRIMARY KEY,
        consumer_id         VARCHAR(64) NOT NULL,
        total_amount        DOUBLE PRECISION NOT NULL,
        status              VARCHAR(32) NOT NULL,
        delivery_address    TEXT NOT NULL,
        order_date          VARCHAR(40) NOT NULL,
        gateway_order_id    VARCHAR(128),
        gateway_payment_id  VARCHAR(128),
        delivery_partner_id VARCHAR(64),
        updated_at          VARCHAR(40) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_lines (
        order_id   VARCHAR(64) NOT NULL,
        line_no    INTEGER NOT NULL,
        product_id VARCHAR(64) NOT NULL,
        quantity   DOUBLE PRECISION NOT NULL,
        unit_price DOUBLE PRECISION NOT NULL,
        PRIMARY KEY (order_id, line_no)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_consumer ON orders (consumer_id, order_date)",
]


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
