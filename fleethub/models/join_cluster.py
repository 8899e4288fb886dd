from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fleethub.models.base import Base, ObjectMetaMixin


class JoinClusterRecord(ObjectMetaMixin, Base):
    __tablename__ = "join_clusters"
    __table_args__ = (UniqueConstraint("namespace", "name", name="uq_join_clusters_namespace_name"),)

    spec: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
