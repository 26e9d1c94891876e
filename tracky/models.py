from pydantic import BaseModel
from typing import Optional
from enum import Enum

# Enums
class Role(str, Enum):
    viewer = "Viewer"
    operator = "Operator"
    supervisor = "Supervisor"

    @classmethod
    def from_claim(cls, value: Optional[str]) -> Optional["Role"]:
        """Map a token role claim (canonical or legacy name) to a Role, or None if unknown."""
        if not value:
            return None
        return ROLE_ALIASES.get(str(value).strip().lower())


# Legacy deployments issue User/PIC/Admin role claims
ROLE_ALIASES = {
    "viewer": Role.viewer,
    "user": Role.viewer,
    "operator": Role.operator,
    "pic": Role.operator,
    "supervisor": Role.supervisor,
    "admin": Role.supervisor,
}

class EntityKind(str, Enum):
    asset = "asset"
    tracker = "tracker"

    @property
    def blob_prefix(self) -> str:
        return f"{self.value}s"

class ApprovalState(str, Enum):
    unapproved = "unapproved"
    approved = "approved"
    edit_requested = "edit_requested"
    edit_approved = "edit_approved"

    @property
    def is_approved(self) -> bool:
        return self is not ApprovalState.unapproved

class DepreciationRate(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"

    @property
    def period_days(self) -> int:
        return PERIOD_DAYS[self]


PERIOD_DAYS = {
    DepreciationRate.daily: 1,
    DepreciationRate.weekly: 7,
    DepreciationRate.monthly: 30,
    DepreciationRate.yearly: 365,
}

class Operation(str, Enum):
    create = "create"
    read = "read"
    list = "list"
    update = "update"
    delete = "delete"
    approve = "approve"
    request_edit = "request_edit"
    approve_edit = "approve_edit"
    append_location = "append_location"

# Columns surfaced on every document; callers cannot write them
RESERVED_FIELDS = frozenset({"id", "revision", "createdAt", "updatedAt"})

# Models
class Actor(BaseModel):
    """Caller context supplied by the identity provider; trusted as-is by the core."""
    actor_id: str
    role: Role

    @property
    def is_supervisor(self) -> bool:
        return self.role is Role.supervisor

    @property
    def is_operator(self) -> bool:
        return self.role is Role.operator
