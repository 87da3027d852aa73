"""
Marketplace — 在庫台帳

products.available_quantity を書き換えるのはここだけ。
引き当て・戻しはそれぞれ 1 本の条件付き UPDATE で行う。
最後の 1 個を取り合っても売り越しは起きない (勝者は事前の読み取りではなく DB が決める)。

呼び出しごとにセッションを開き、戻る前にコミットする。
reserve() が戻った時点で減算は確定しており、行ロックも保持していない。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from .aggregate import Product, Reservation
from .errors import InsufficientInventory, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class InventoryLedger:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get_product(self, product_id: str) -> Product:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT id, owner_id, name, unit_price, available_quantity
                    FROM products WHERE id = :id
                """),
                {"id": product_id},
            )
            row = result.fetchone()
        if not row:
            raise NotFoundError(f"Product not found: {product_id}")
        return Product(
            id=row.id,
            owner_id=row.owner_id,
            name=row.name,
            unit_price=float(row.unit_price),
            available_quantity=float(row.available_quantity),
        )

    async def reserve(self, product_id: str, quantity: float) -> Reservation:
        """
        商品を ``quantity`` だけアトミックに引き当てる。

        単価は同じ文で返すので、価格スナップショットは
        在庫を取ったその瞬間のものになる。
        """
        if quantity <= 0:
            raise ValidationError(f"Quantity must be positive, got {quantity}")

        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE products
                    SET available_quantity = available_quantity - :qty,
                        updated_at = :now
                    WHERE id = :id AND available_quantity >= :qty
                    RETURNING available_quantity, unit_price
                """),
                {"qty": quantity, "now": _now(), "id": product_id},
            )
            row = result.fetchone()
            if row:
                await session.commit()
                logger.info(
                    "Reserved %s of %s, %s left", quantity, product_id, row.available_quantity
                )
                return Reservation(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price=float(row.unit_price),
                    available_quantity=float(row.available_quantity),
                )

            await session.rollback()
            result = await session.execute(
                text("SELECT available_quantity FROM products WHERE id = :id"),
                {"id": product_id},
            )
            current = result.fetchone()

        if not current:
            raise NotFoundError(f"Product not found: {product_id}")
        logger.info(
            "Reservation refused for %s: requested=%s available=%s",
            product_id, quantity, current.available_quantity,
        )
        raise InsufficientInventory(product_id, quantity, float(current.available_quantity))

    async def release(self, product_id: str, quantity: float) -> float:
        """引き当てを戻し、戻した後の在庫数を返す"""
        if quantity <= 0:
            raise ValidationError(f"Quantity must be positive, got {quantity}")

        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE products
                    SET available_quantity = available_quantity + :qty,
                        updated_at = :now
                    WHERE id = :id
                    RETURNING available_quantity
                """),
                {"qty": quantity, "now": _now(), "id": product_id},
            )
            row = result.fetchone()
            if not row:
                await session.rollback()
                raise NotFoundError(f"Product not found: {product_id}")
            await session.commit()

        logger.info("Released %s of %s, %s left", quantity, product_id, row.available_quantity)
        return float(row.available_quantity)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
