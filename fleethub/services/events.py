from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleethub.logger import get_logger
from fleethub.models.event import Event

_logger = get_logger("services.events")


async def list_events(
    session: AsyncSession,
    limit: int = 200,
    category: Optional[str] = None,
    object_key: Optional[str] = None,
) -> List[Event]:
    query = select(Event).order_by(Event.created_at.desc())
    if category:
        query = query.where(Event.category == category)
    if object_key:
        query = query.where(Event.object_key == object_key)
    result = await session.execute(query.limit(limit))
    return list(result.scalars().all())


def record_event(
    session: AsyncSession,
    *,
    category: str,
    name: str,
    level: str = "INFO",
    object_key: str = "",
    fields: Optional[Dict[str, Any]] = None,
) -> Event:
    event = Event(
        id=str(uuid4()),
        category=category,
        name=name,
        level=level,
        object_key=object_key,
        fields=fields or {},
    )
    session.add(event)
    _logger.debug(
        "events.record",
        "Recorded event",
        event_id=event.id,
        category=category,
        name=name,
        object_key=object_key,
    )
    return event

