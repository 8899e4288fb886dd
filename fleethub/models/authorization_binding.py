from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy import JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fleethub.models.base import Base, ObjectMetaMixin


class AuthorizationBindingRecord(ObjectMetaMixin, Base):
    __tablename__ = "authorization_bindings"
    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_authorization_bindings_namespace_name"),
    )

    role_ref: Mapped[str] = mapped_column(String(253))
    subjects: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
