"""
Marketplace — 注文ストア

注文は 2 つのテーブルに保存する:
  ``orders``       1 注文 1 行
  ``order_lines``  変更されない明細スナップショット

ステータス変更は呼び出し側が期待するステータスを条件にした UPDATE で行う。
同じ注文への決済確認が同時に来ても、勝つのは片方だけになる。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .aggregate import Order, OrderLine, OrderStatus
from .errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class OrderStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def insert(self, order: Order) -> Order:
        async with self._session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, consumer_id, total_amount, status, delivery_address,
                         order_date, gateway_order_id, gateway_payment_id,
                         delivery_partner_id, updated_at)
                    VALUES
                        (:id, :consumer_id, :total_amount, :status, :delivery_address,
                         :order_date, :gateway_order_id, :gateway_payment_id,
                         :delivery_partner_id, :now)
                """),
                {
                    "id": order.id,
                    "consumer_id": order.consumer_id,
                    "total_amount": order.total_amount,
                    "status": order.status.value,
                    "delivery_address": order.delivery_address,
                    "order_date": order.order_date.isoformat(),
                    "gateway_order_id": order.gateway_order_id,
                    "gateway_payment_id": order.gateway_payment_id,
                    "delivery_partner_id": order.delivery_partner_id,
                    "now": _now(),
                },
            )
            await session.execute(
                text("""
                    INSERT INTO order_lines (order_id, line_no, product_id, quantity, unit_price)
                    VALUES (:order_id, :line_no, :product_id, :quantity, :unit_price)
                """),
                [
                    {
                        "order_id": order.id,
                        "line_no": i,
                        "product_id": line.product_id,
                        "quantity": line.quantity,
                        "unit_price": line.unit_price,
                    }
                    for i, line in enumerate(order.lines)
                ],
            )
            await session.commit()
        logger.info("Order %s stored (%s)", order.id, order.status.value)
        return order

    async def find_by_id(self, order_id: str) -> Order:
        async with self._session_factory() as session:
            order = await _load(session, order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}")
        return order

    async def list_by_consumer(self, consumer_id: str) -> list[Order]:
        """購入者の注文を新しい順に返す"""
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT * FROM orders
                    WHERE consumer_id = :consumer_id
                    ORDER BY order_date DESC
                """),
                {"consumer_id": consumer_id},
            )
            rows = result.fetchall()

            result = await session.execute(
                text("""
                    SELECT l.* FROM order_lines l
                    JOIN orders o ON o.id = l.order_id
                    WHERE o.consumer_id = :consumer_id
                    ORDER BY l.order_id, l.line_no
                """),
                {"consumer_id": consumer_id},
            )
            lines: dict[str, list[OrderLine]] = {}
            for line in result.fetchall():
                lines.setdefault(line.order_id, []).append(_line_from_row(line))

        return [_order_from_row(row, lines.get(row.id, [])) for row in rows]

    async def set_intent(self, order_id: str, intent_id: str) -> Order:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE orders
                    SET gateway_order_id = :intent_id, updated_at = :now
                    WHERE id = :id AND status = :status
                """),
                {
                    "intent_id": intent_id,
                    "now": _now(),
                    "id": order_id,
                    "status": OrderStatus.PENDING_PAYMENT.value,
                },
            )
            if result.rowcount == 0:
                await session.rollback()
                current = await _load(session, order_id)
                if current is None:
                    raise NotFoundError(f"Order not found: {order_id}")
                raise ConflictError(
                    order_id, OrderStatus.PENDING_PAYMENT.value, current.status.value
                )
            await session.commit()
            return await _load(session, order_id)

    async def transition_status(
        self,
        order_id: str,
        expected: OrderStatus,
        next_status: OrderStatus,
        payment_id: str | None = None,
    ) -> Order:
        """
        注文を ``expected`` から ``next_status`` へ遷移させる。

        保存済みのステータスがまだ ``expected`` のときだけ成功する。
        そうでなければ実際のステータスを持つ ConflictError を送出する。
        """
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE orders
                    SET status = :next,
                        gateway_payment_id = COALESCE(:payment_id, gateway_payment_id),
                        updated_at = :now
                    WHERE id = :id AND status = :expected
                """),
                {
                    "next": next_status.value,
                    "payment_id": payment_id,
                    "now": _now(),
                    "id": order_id,
                    "expected": expected.value,
                },
            )
            if result.rowcount == 0:
                await session.rollback()
                current = await _load(session, order_id)
                if current is None:
                    raise NotFoundError(f"Order not found: {order_id}")
                raise ConflictError(order_id, expected.value, current.status.value)
            await session.commit()
            order = await _load(session, order_id)

        logger.info("Order %s: %s → %s", order_id, expected.value, next_status.value)
        return order

    async def delete(self, order_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                text("DELETE FROM order_lines WHERE order_id = :id"), {"id": order_id}
            )
            await session.execute(
                text("DELETE FROM orders WHERE id = :id"), {"id": order_id}
            )
            await session.commit()
        logger.info("Order %s deleted", order_id)


async def _load(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"), {"id": order_id}
    )
    row = result.fetchone()
    if not row:
        return None
    result = await session.execute(
        text("SELECT * FROM order_lines WHERE order_id = :id ORDER BY line_no"),
        {"id": order_id},
    )
    return _order_from_row(row, [_line_from_row(line) for line in result.fetchall()])


def _line_from_row(row) -> OrderLine:
    return OrderLine(
        product_id=row.product_id,
        quantity=float(row.quantity),
        unit_price=float(row.unit_price),
    )


def _order_from_row(row, lines: list[OrderLine]) -> Order:
    return Order(
        id=row.id,
        consumer_id=row.consumer_id,
        lines=tuple(lines),
        total_amount=float(row.total_amount),
        status=OrderStatus(row.status),
        delivery_address=row.delivery_address,
        order_date=datetime.fromisoformat(row.order_date),
        gateway_order_id=row.gateway_order_id,
        gateway_payment_id=row.gateway_payment_id,
        delivery_partner_id=row.delivery_partner_id,
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
