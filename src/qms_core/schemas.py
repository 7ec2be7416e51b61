"""Pydantic schemas for configuration files, requests and DTOs."""
import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, field_validator

PERMISSION_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]*\.[A-Za-z][A-Za-z0-9]*$")


class Actor(BaseModel):
    """Authenticated caller as supplied by the identity collaborator."""

    model_config = ConfigDict(frozen=True)

    user_id: UUID
    tenant_id: UUID


# Role catalog file

class RoleCatalogFile(BaseModel):
    """Schema of the YAML role catalog file (``roles: {name: [permission, ...]}``)."""

    roles: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, roles: dict[str, list[str]]) -> dict[str, list[str]]:
        for name, permissions in roles.items():
            if not name or not name.strip():
                raise ValueError("Role names must be non-empty")
            for permission in permissions:
                if not isinstance(permission, str) or not PERMISSION_PATTERN.match(permission):
                    raise ValueError(
                        f"Invalid permission '{permission}' for role '{name}'. "
                        f"Permissions must look like 'Area.Action'."
                    )
        return roles


# Delegation Schemas

class DelegationRequest(BaseModel):
    """Request to delegate one permission to a subordinate."""

    delegatee_id: UUID
    permission: str = Field(..., min_length=1, max_length=100)
    expires_after_days: Optional[int] = Field(None, description="Days until expiry; omitted = policy default")


class DelegationSummary(BaseModel):
    """Delegation as shown in 'my delegations' / 'received delegations' lists."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    delegator_id: UUID
    delegatee_id: UUID
    permission: str
    granted_at: datetime
    expires_at: Optional[datetime] = None
    revoked: bool
    revoked_at: Optional[datetime] = None
    is_active: bool = False
