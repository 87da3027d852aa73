"""
Marketplace — イベント発行

注文イベントと Saga イベントを Redis Pub/Sub に発行する。
購読するのは通知サービス (購入者・農家へのメール) など。

Redis Pub/Sub は撃ちっぱなし:
  停止中の購読者はイベントを取りこぼす。
  発行に失敗しても、元になった変更は取り消さない。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ORDER_EVENTS = "order_events"
SAGA_EVENTS = "saga_events"


class OrderEventPublisher:
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def publish(self, event: BaseModel) -> None:
        """注文イベントをクラス名をイベント種別として ``order_events`` に発行する"""
        await self.redis.publish(
            ORDER_EVENTS,
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
        logger.info("Published %s", type(event).__name__)

    async def publish_saga(self, event_type: str, order_id: str, saga_log: list[dict]) -> None:
        await self.redis.publish(
            SAGA_EVENTS,
            json.dumps(
                {
                    "event_type": event_type,
                    "order_id": order_id,
                    "saga_log": saga_log,
                },
                default=str,
            ),
        )
