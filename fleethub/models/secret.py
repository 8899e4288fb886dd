from __future__ import annotations

from typing import Dict

from sqlalchemy import JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fleethub.models.base import Base, ObjectMetaMixin


class SecretRecord(ObjectMetaMixin, Base):
    __tablename__ = "secrets"
    __table_args__ = (UniqueConstraint("namespace", "name", name="uq_secrets_namespace_name"),)

    type: Mapped[str] = mapped_column(String(64), default="opaque")
    data: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)
