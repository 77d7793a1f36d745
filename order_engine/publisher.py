"""
Order Engine — イベント発行 (Redis Pub/Sub)

コミット済みのイベントを他サービスへ通知する。
通知は整合性保証の一部ではないので、発行失敗は記録のみで
確定済みの状態は巻き戻さない。publish はコミット後に呼ばれるため、
どの例外も呼び出し側へ漏らさない（キャンセルだけはそのまま伝える）。
"""

import json
import logging

import redis.asyncio as aioredis

from .events import DomainEvent

logger = logging.getLogger(__name__)

ORDER_CHANNEL = "order_events"
INVENTORY_CHANNEL = "inventory_events"


class EventPublisher:
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def publish(self, channel: str, event: DomainEvent) -> None:
        message = json.dumps(
            {
                "event_type": event.event_type,
                "data": event.model_dump(mode="json"),
            },
            default=str,
        )
        try:
            await self.redis.publish(channel, message)
        except Exception:
            # RedisError を含む。CancelledError は BaseException なので伝播する
            logger.exception("Failed to publish %s on %s", event.event_type, channel)

    async def publish_inventory(self, event: DomainEvent) -> None:
        await self.publish(INVENTORY_CHANNEL, event)

    async def publish_order(self, event: DomainEvent) -> None:
        await self.publish(ORDER_CHANNEL, event)
