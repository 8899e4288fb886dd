from __future__ import annotations

from typing import Dict, Literal

from pydantic import BaseModel, Field

from fleethub.schemas.objects import JoinClusterSpec, JoinClusterStatus


class JoinClusterCreate(BaseModel):
    name: str = Field(min_length=1, max_length=253, pattern=r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
    namespace: str = Field(default="default", min_length=1, max_length=63)
    labels: Dict[str, str] = Field(default_factory=dict)
    spec: JoinClusterSpec = Field(default_factory=JoinClusterSpec)


class JoinClusterStatusUpdate(BaseModel):
    resource_version: int = Field(ge=1)
    status: JoinClusterStatus


class JoinClusterDeleteOut(BaseModel):
    namespace: str
    name: str
    state: Literal["terminating", "deleted"]
