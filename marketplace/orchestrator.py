"""
Marketplace — 注文ワークフロー (Saga オーケストレーター)

商品テーブルと注文テーブルは 1 トランザクションで更新できないため、
注文作成は Saga として実行する。状態を変える各ステップは取り消し用の
補償ステップを積み、失敗時は積んだ順の逆に補償を実行する。

  create_order
  ┌───────────────────────────────────────────────────────────────┐
  │  1. 明細ごとに ReserveInventory   補償: ReleaseInventory        │
  │  2. InsertOrder (PENDING_PAYMENT) 補償: DeleteOrder             │
  │  3. CreatePaymentIntent                                         │
  │     ├─ 成功 → インテント ID を保存して注文を返す                │
  │     └─ 失敗 → 2 を補償、1 を補償 (各明細 1 回ずつ)              │
  └───────────────────────────────────────────────────────────────┘

  confirm_payment
    HMAC 署名を検証 → PENDING_PAYMENT → CONFIRMED (条件付き)
    → OrderConfirmed をバックグラウンドで発行

引き当てはゲートウェイ呼び出しの前にコミットするので、
ネットワーク待ちの間に在庫のロックを持ち続けることはない。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime, timezone
from functools import partial
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .aggregate import Order, OrderLine, OrderStatus
from .errors import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    InsufficientInventory,
    NotFoundError,
    PaymentIntentCreationFailed,
    SignatureError,
    ValidationError,
)
from .events import OrderCompensated, OrderConfirmed, OrderPlaced
from .gateway import PaymentGatewayClient
from .identity import Caller, Role
from .inventory import InventoryLedger
from .notifications import OrderEventPublisher
from .order_store import OrderStore

logger = logging.getLogger(__name__)

_PAID_STATUSES = ("authorized", "captured")


class LineRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: float = Field(gt=0)


class OrderPlacement(BaseModel):
    order: Order
    gateway_key_id: str
    saga_log: list[dict]

    @property
    def payment_intent_id(self) -> str | None:
        return self.order.gateway_order_id


class OrderWorkflow:
    def __init__(
        self,
        ledger: InventoryLedger,
        store: OrderStore,
        gateway: PaymentGatewayClient,
        publisher: OrderEventPublisher,
        currency: str = "INR",
        legacy_partial_reservation: bool = False,
        verify_payment_with_gateway: bool = False,
    ):
        self.ledger = ledger
        self.store = store
        self.gateway = gateway
        self.publisher = publisher
        self.currency = currency
        self.legacy_partial_reservation = legacy_partial_reservation
        self.verify_payment_with_gateway = verify_payment_with_gateway
        self._pending: set[asyncio.Task] = set()

    # ── 注文作成 ────────────────────────────────────

    async def create_order(
        self,
        caller: Caller,
        lines: list[LineRequest],
        delivery_address: str,
    ) -> OrderPlacement:
        """
        全明細を引き当て、注文を保存し、決済インテントを作成する。

        AuthorizationError / ValidationError / NotFoundError /
        InsufficientInventory / PaymentIntentCreationFailed を送出する。
        何が送出されても (取り消しを含む)、保存済みの注文がない引き当ては残らない。
        例外は legacy_partial_reservation モードだけ。
        """
        if caller.role is not Role.CONSUMER:
            raise AuthorizationError("Only consumers can place orders")
        if not lines:
            raise ValidationError("An order needs at least one line")
        if not delivery_address or not delivery_address.strip():
            raise ValidationError("Delivery address is required")

        order_id = str(uuid4())
        saga_log: list[dict] = []
        undo: list[tuple[str, dict, Callable[[], Awaitable[object]]]] = []
        reserving = True

        try:
            # ── Step 1: 明細ごとに在庫を引き当て ──
            order_lines = []
            for line in lines:
                _step(saga_log, "ReserveInventory", product_id=line.product_id, quantity=line.quantity)
                await self.ledger.get_product(line.product_id)
                reservation = await self.ledger.reserve(line.product_id, line.quantity)
                saga_log[-1]["status"] = "COMPLETED"
                undo.append((
                    "ReleaseInventory",
                    {"product_id": line.product_id, "quantity": line.quantity},
                    partial(self.ledger.release, line.product_id, line.quantity),
                ))
                order_lines.append(OrderLine(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=reservation.unit_price,
                ))
            reserving = False

            order = Order.place(caller.user_id, order_lines, delivery_address, order_id=order_id)
            if order.total_amount <= 0:
                raise ValidationError("Order total must be greater than 0")

            # ── Step 2: PENDING_PAYMENT で注文を保存 ──
            _step(saga_log, "InsertOrder", order_id=order_id)
            await self.store.insert(order)
            saga_log[-1]["status"] = "COMPLETED"
            undo.append(("DeleteOrder", {"order_id": order_id}, partial(self.store.delete, order_id)))

            # ── Step 3: 決済インテントを作成 ──
            _step(saga_log, "CreatePaymentIntent", amount=order.total_amount)
            try:
                intent_id = await self.gateway.create_intent(
                    order.id, order.total_amount, self.currency
                )
            except GatewayError as e:
                raise PaymentIntentCreationFailed(
                    f"Failed to create payment order: {e.message}"
                ) from e
            order = await self.store.set_intent(order.id, intent_id)
            saga_log[-1]["status"] = "COMPLETED"

        except (Exception, asyncio.CancelledError) as e:
            if not saga_log or saga_log[-1]["status"] != "EXECUTING":
                _step(saga_log, "ValidateOrder", order_id=order_id)
            saga_log[-1]["status"] = "FAILED"
            reason = str(e) or type(e).__name__
            saga_log[-1]["error"] = reason
            if (
                reserving
                and self.legacy_partial_reservation
                and isinstance(e, (NotFoundError, InsufficientInventory))
            ):
                logger.warning(
                    "Order %s: line failed, keeping %d earlier reservation(s) (legacy mode)",
                    order_id, len(undo),
                )
                self._spawn(self.publisher.publish_saga("SagaFailed", order_id, saga_log))
            elif undo:
                # 取り消されても補償は最後まで走らせる
                await asyncio.shield(
                    self._compensate(order_id, caller.user_id, undo, saga_log, reason)
                )
            else:
                self._spawn(self.publisher.publish_saga("SagaFailed", order_id, saga_log))
            raise

        logger.info("Order %s placed, intent %s", order.id, order.gateway_order_id)
        self._spawn(self.publisher.publish(OrderPlaced(
            order_id=order.id,
            consumer_id=order.consumer_id,
            total_amount=order.total_amount,
            gateway_order_id=order.gateway_order_id,
            timestamp=_now(),
        )))
        self._spawn(self.publisher.publish_saga("SagaCompleted", order.id, saga_log))
        return OrderPlacement(order=order, gateway_key_id=self.gateway.key_id, saga_log=saga_log)

    async def _compensate(
        self,
        order_id: str,
        consumer_id: str,
        undo: list[tuple[str, dict, Callable[[], Awaitable[object]]]],
        saga_log: list[dict],
        reason: str,
    ) -> None:
        """補償ステップを新しい順に実行する。各ステップは 1 回だけ。"""
        logger.warning("Order %s: compensating %d step(s): %s", order_id, len(undo), reason)
        released = []
        for action, params, run in reversed(undo):
            _step(saga_log, f"{action} (COMPENSATING)", **params)
            try:
                await run()
                saga_log[-1]["status"] = "COMPLETED"
                if action == "ReleaseInventory":
                    released.append(params)
            except Exception as e:
                # 1 つの補償が失敗しても残りは続行する
                saga_log[-1]["status"] = "FAILED"
                saga_log[-1]["error"] = str(e)
                logger.exception(
                    "Order %s: compensation %s %s failed, manual repair needed",
                    order_id, action, params,
                )

        self._spawn(self.publisher.publish(OrderCompensated(
            order_id=order_id,
            consumer_id=consumer_id,
            reason=reason,
            released=released,
            timestamp=_now(),
        )))
        self._spawn(self.publisher.publish_saga("SagaCompensated", order_id, saga_log))

    # ── 決済確認 ────────────────────────────────────

    async def confirm_payment(self, order_id: str, payment_id: str, signature: str) -> Order:
        """
        ゲートウェイのチェックアウト後コールバックで注文の決済を確定する。

        署名が不正なら注文は変更しないので、クライアントは再試行できる。
        確定済みの注文をもう一度確定しても何もせず、その注文を返す。
        """
        order = await self.store.find_by_id(order_id)

        if not order.gateway_order_id:
            raise SignatureError(f"Order {order_id} has no payment intent")
        if not self.gateway.verify_signature(order.gateway_order_id, payment_id, signature):
            logger.warning("Order %s: invalid payment signature for %s", order_id, payment_id)
            raise SignatureError("Invalid payment signature")

        if self.verify_payment_with_gateway:
            payment = await self.gateway.fetch_payment(payment_id)
            if payment.get("order_id") != order.gateway_order_id:
                raise ValidationError(f"Payment {payment_id} does not belong to order {order_id}")
            if payment.get("status") not in _PAID_STATUSES:
                raise ValidationError(
                    f"Payment {payment_id} is {payment.get('status')}, not paid"
                )

        try:
            confirmed = await self.store.transition_status(
                order_id, OrderStatus.PENDING_PAYMENT, OrderStatus.CONFIRMED, payment_id
            )
        except ConflictError as e:
            if OrderStatus(e.current).reached(OrderStatus.CONFIRMED):
                logger.info("Order %s already %s, nothing to do", order_id, e.current)
                return await self.store.find_by_id(order_id)
            raise

        self._spawn(self._notify_confirmed(confirmed))
        return confirmed

    async def _notify_confirmed(self, order: Order) -> None:
        owners = []
        for product_id in dict.fromkeys(line.product_id for line in order.lines):
            try:
                product = await self.ledger.get_product(product_id)
            except NotFoundError:
                logger.warning("Order %s: product %s gone, owner not notified", order.id, product_id)
                continue
            owners.append({
                "owner_id": product.owner_id,
                "product_id": product.id,
                "product_name": product.name,
            })

        await self.publisher.publish(OrderConfirmed(
            order_id=order.id,
            consumer_id=order.consumer_id,
            total_amount=order.total_amount,
            gateway_payment_id=order.gateway_payment_id,
            owners=owners,
            timestamp=_now(),
        ))

    # ── 参照 ────────────────────────────────────────

    async def get_order(self, order_id: str, caller: Caller) -> Order:
        order = await self.store.find_by_id(order_id)
        if order.consumer_id != caller.user_id:
            raise AuthorizationError("You can only access your own orders")
        return order

    async def list_orders(self, caller: Caller) -> list[Order]:
        return await self.store.list_by_consumer(caller.user_id)

    # ── バックグラウンド通知 ────────────────────────

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.create_task(self._run_quietly(coro))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _run_quietly(coro: Coroutine) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Failed to publish notification")

    async def wait_for_notifications(self) -> None:
        """これまでに予約した通知がすべて終わるまで待つ"""
        while self._pending:
            await asyncio.gather(*list(self._pending))


def _step(saga_log: list[dict], action: str, **params) -> None:
    saga_log.append({
        "step": len(saga_log) + 1,
        "action": action,
        "status": "EXECUTING",
        "timestamp": _now().isoformat(),
        **params,
    })


def _now() -> datetime:
    return datetime.now(timezone.utc)
