from __future__ import annotations

import base64
from datetime import datetime, timedelta
from enum import Enum
from typing import ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionType(str, Enum):
    READY_TO_JOIN = "ReadyToJoin"
    AGENT_CONNECTED = "AgentConnected"
    AGENT_STALE = "AgentStale"
    AGENT_DISCONNECTED = "AgentDisconnected"


class ObjectMeta(BaseModel):
    name: str = Field(min_length=1, max_length=253, pattern=r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
    namespace: str = Field(default="default", min_length=1, max_length=63)
    uid: str = ""
    resource_version: int = 0
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    finalizers: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)


class StoredObject(BaseModel):
    kind: ClassVar[str] = ""

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None


class Condition(BaseModel):
    type: ConditionType
    status: ConditionStatus
    last_transition_time: Optional[datetime] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class AgentInfo(BaseModel):
    version: str
    image: str
    cluster_name: str = ""
    cluster_version: str = ""
    node_count: int = 0
    last_update_time: datetime


class JoinClusterSpec(BaseModel):
    identity_name: Optional[str] = Field(
        default=None,
        max_length=253,
        pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$",
    )
    stale_duration: Optional[timedelta] = None
    disconnect_duration: Optional[timedelta] = None


class JoinClusterStatus(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)
    join_command: Optional[str] = None
    identity_name: Optional[str] = None
    agent_info: Optional[AgentInfo] = None


class JoinCluster(StoredObject):
    kind: ClassVar[str] = "JoinCluster"

    spec: JoinClusterSpec = Field(default_factory=JoinClusterSpec)
    status: JoinClusterStatus = Field(default_factory=JoinClusterStatus)


class Identity(StoredObject):
    kind: ClassVar[str] = "Identity"

    secrets: List[str] = Field(default_factory=list)


class Subject(BaseModel):
    kind: str = "Identity"
    name: str
    namespace: str


class AuthorizationBinding(StoredObject):
    kind: ClassVar[str] = "AuthorizationBinding"

    role_ref: str
    subjects: List[Subject] = Field(default_factory=list)


class Secret(StoredObject):
    kind: ClassVar[str] = "Secret"

    type: str = "opaque"
    data: Dict[str, str] = Field(default_factory=dict)

    def value(self, key: str) -> bytes:
        raw = self.data.get(key, "")
        if not raw:
            return b""
        return base64.b64decode(raw.encode("ascii"))

    def set_value(self, key: str, value: bytes) -> None:
        self.data[key] = base64.b64encode(value).decode("ascii")
