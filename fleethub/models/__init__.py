from fleethub.models.authorization_binding import AuthorizationBindingRecord
from fleethub.models.base import Base
from fleethub.models.event import Event
from fleethub.models.identity import IdentityRecord
from fleethub.models.join_cluster import JoinClusterRecord
from fleethub.models.secret import SecretRecord

__all__ = [
    "AuthorizationBindingRecord",
    "Base",
    "Event",
    "IdentityRecord",
    "JoinClusterRecord",
    "SecretRecord",
]
