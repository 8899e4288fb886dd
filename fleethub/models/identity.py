from __future__ import annotations

from typing import List

from sqlalchemy import JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fleethub.models.base import Base, ObjectMetaMixin


class IdentityRecord(ObjectMetaMixin, Base):
    __tablename__ = "identities"
    __table_args__ = (UniqueConstraint("namespace", "name", name="uq_identities_namespace_name"),)

    secrets: Mapped[List[str]] = mapped_column(JSON, default=list)
