"""
Marketplace — 注文集約 (Order Aggregate)

注文と明細は不変な値として扱う。
ステータス変更やゲートウェイ ID の付与はストアが行い、新しい Order として返す。
明細と合計金額は作成時に確定し、以後変わらない。

状態遷移:
    PENDING_PAYMENT → CONFIRMED → PREPARING → OUT_FOR_DELIVERY → DELIVERED
    DELIVERED 以前の任意の状態 → CANCELLED
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    def reached(self, other: "OrderStatus") -> bool:
        """本線の遷移上で ``other`` に到達済みなら True"""
        if self is OrderStatus.CANCELLED or other is OrderStatus.CANCELLED:
            return self is other
        return _PROGRESSION.index(self) >= _PROGRESSION.index(other)


_PROGRESSION = [
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]


class Product(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    name: str
    unit_price: float
    available_quantity: float


class Reservation(BaseModel):
    """コミット済みの在庫引き当て (1 商品分)"""
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: float
    unit_price: float
    available_quantity: float


class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: float
    unit_price: float

    @property
    def subtotal(self) -> float:
        return self.quantity * self.unit_price


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    consumer_id: str
    lines: tuple[OrderLine, ...]
    total_amount: float
    status: OrderStatus
    delivery_address: str
    order_date: datetime
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    delivery_partner_id: str | None = None

    @classmethod
    def place(
        cls,
        consumer_id: str,
        lines: list[OrderLine],
        delivery_address: str,
        order_id: str | None = None,
    ) -> "Order":
        """PENDING_PAYMENT の注文を作る。合計金額を計算するのはここだけ。"""
        return cls(
            id=order_id or str(uuid4()),
            consumer_id=consumer_id,
            lines=tuple(lines),
            total_amount=sum(line.subtotal for line in lines),
            status=OrderStatus.PENDING_PAYMENT,
            delivery_address=delivery_address,
            order_date=datetime.now(timezone.utc),
        )
