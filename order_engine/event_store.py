"""
Order Engine — イベントストア

追記専用の監査ログ。状態変更と同じトランザクションで書き込むため、
コミットされた変更には必ずイベントが残る（逆も同じ）。
"""

import json
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import event_store
from .events import DomainEvent


async def append_event(
    session: AsyncSession,
    aggregate_id: UUID,
    aggregate_type: str,
    event: DomainEvent,
) -> None:
    """イベントを追記する。コミットは呼び出し側の責務。"""
    await session.execute(
        insert(event_store).values(
            aggregate_id=str(aggregate_id),
            aggregate_type=aggregate_type,
            event_type=event.event_type,
            event_data=event.model_dump_json(),
            created_at=datetime.now(timezone.utc),
        )
    )


def _row_to_dict(row) -> dict:
    return {
        "aggregate_id": row.aggregate_id,
        "aggregate_type": row.aggregate_type,
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data)
        if isinstance(row.event_data, str)
        else row.event_data,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def load_events(session: AsyncSession, aggregate_id: UUID) -> list[dict]:
    """指定した集約のイベントを記録順に返す。"""
    result = await session.execute(
        select(event_store)
        .where(event_store.c.aggregate_id == str(aggregate_id))
        .order_by(event_store.c.id)
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(event_store).order_by(event_store.c.id))
    return [_row_to_dict(row) for row in result.fetchall()]
