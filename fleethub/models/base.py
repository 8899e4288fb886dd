from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ObjectMetaMixin(TimestampMixin):
    uid: Mapped[str] = mapped_column(String(64), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(63), index=True)
    name: Mapped[str] = mapped_column(String(253))
    resource_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    deletion_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finalizers: Mapped[List[str]] = mapped_column(JSON, default=list)
    labels: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)
