"""SQLAlchemy database models."""
from datetime import datetime, timezone
from uuid import uuid4
import enum

from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    Enum,
    CheckConstraint,
    Boolean,
    UniqueConstraint,
    Index,
    Table,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


# Association table for user role assignments (many-to-many)
user_roles = Table(
    'user_roles',
    Base.metadata,
    Column('user_id', Uuid, ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
    Column('role_id', Uuid, ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
    Column('assigned_at', DateTime, nullable=False, default=utcnow),
)


class CapaStatus(str, enum.Enum):
    """CAPA lifecycle status enum.

    Strict order, no skipping:
    draft → under_investigation → actions_defined → actions_implemented
    → effectiveness_verified → closed
    """

    DRAFT = "draft"
    UNDER_INVESTIGATION = "under_investigation"
    ACTIONS_DEFINED = "actions_defined"
    ACTIONS_IMPLEMENTED = "actions_implemented"
    EFFECTIVENESS_VERIFIED = "effectiveness_verified"
    CLOSED = "closed"  # Terminal


class CapaType(str, enum.Enum):
    """CAPA type enum."""

    CORRECTIVE = "corrective"
    PREVENTIVE = "preventive"
    BOTH = "both"


class CapaPriority(str, enum.Enum):
    """CAPA priority enum."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DocumentStatus(str, enum.Enum):
    """Document approval workflow status enum."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"  # Terminal


class TaskStatus(str, enum.Enum):
    """Task lifecycle status enum.

    OVERDUE is observed from due date + status, never chosen by a user.
    """

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"  # Terminal
    REJECTED = "rejected"
    CANCELLED = "cancelled"  # Terminal
    OVERDUE = "overdue"


class TaskPriority(str, enum.Enum):
    """Task priority enum."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Tenant(Base):
    """
    Tenant model for isolated customer workspaces.

    Every user, role, delegation and lifecycle entity belongs to exactly one tenant.
    """

    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    users = relationship("User", back_populates="tenant", cascade="all, delete-orphan")
    roles = relationship("Role", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Tenant {self.slug}: {self.name}>"


class OrganizationUnit(Base):
    """Department / organization unit within a tenant."""

    __tablename__ = "organization_units"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    parent_id = Column(Uuid, ForeignKey("organization_units.id", ondelete="SET NULL"), nullable=True)

    def __repr__(self) -> str:
        return f"<OrganizationUnit {self.name}>"


class User(Base):
    """
    User model.

    Authentication happens outside this package; a user row only carries
    tenant membership, the manager link that forms the reporting hierarchy,
    an optional department, and role assignments.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(255))
    manager_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    org_unit_id = Column(Uuid, ForeignKey("organization_units.id", ondelete="SET NULL"), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    tenant = relationship("Tenant", back_populates="users")
    manager = relationship("User", remote_side=[id], foreign_keys=[manager_id])
    org_unit = relationship("OrganizationUnit")
    roles = relationship("Role", secondary=user_roles, lazy="selectin")

    __table_args__ = (
        CheckConstraint("manager_id IS NULL OR manager_id != id", name="no_self_manager"),
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Role(Base):
    """
    Tenant-scoped role. Permissions are seeded once from the role catalog
    and not edited afterwards.
    """

    __tablename__ = "roles"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    tenant = relationship("Tenant", back_populates="roles")
    permissions = relationship(
        "RolePermission",
        back_populates="role",
        cascade="all, delete-orphan",
        order_by="RolePermission.position",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="unique_tenant_role_name"),
    )

    def __repr__(self) -> str:
        return f"<Role {self.name}>"


class RolePermission(Base):
    """One permission string granted by a role, in declaration order."""

    __tablename__ = "role_permissions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    role_id = Column(Uuid, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    permission = Column(String(100), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    role = relationship("Role", back_populates="permissions")

    __table_args__ = (
        UniqueConstraint("role_id", "permission", name="unique_role_permission"),
    )

    def __repr__(self) -> str:
        return f"<RolePermission {self.permission}>"


class PermissionDelegation(Base):
    """
    Time-bounded loan of one permission from a delegator to a delegatee.

    Rows are never deleted. Expiry is evaluated at read time; revocation is
    the only mutation and it is permanent. Users referenced as delegator or
    delegatee cannot be deleted (deactivate them instead).
    """

    __tablename__ = "permission_delegations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    delegator_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    delegatee_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    permission = Column(String(100), nullable=False)
    granted_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)
    revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime, nullable=True)
    revoked_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    delegator = relationship("User", foreign_keys=[delegator_id])
    delegatee = relationship("User", foreign_keys=[delegatee_id])

    __table_args__ = (
        CheckConstraint("delegator_id != delegatee_id", name="no_self_delegation"),
        Index("ix_permission_delegations_delegatee_permission", "delegatee_id", "permission"),
    )

    def is_expired_at(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_active_at(self, now: datetime) -> bool:
        """Active = not revoked AND (no expiry OR now < expiry)."""
        return not self.revoked and not self.is_expired_at(now)

    def __repr__(self) -> str:
        return f"<PermissionDelegation {self.permission}: {self.delegator_id} -> {self.delegatee_id}>"


class Capa(Base):
    """Corrective and Preventive Action.

    Status changes only through the operations in ``qms_core.capa``.
    ``version`` is the optimistic concurrency token.
    """

    __tablename__ = "capas"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    capa_number = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    capa_type = Column(Enum(CapaType, values_callable=_enum_values), nullable=False, default=CapaType.CORRECTIVE)
    priority = Column(Enum(CapaPriority, values_callable=_enum_values), nullable=False, default=CapaPriority.MEDIUM)
    status = Column(Enum(CapaStatus, values_callable=_enum_values), nullable=False, default=CapaStatus.DRAFT, index=True)
    owner_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    source_audit_id = Column(Uuid, nullable=True)
    target_completion_date = Column(DateTime, nullable=True)
    actual_completion_date = Column(DateTime, nullable=True)

    # Investigation / action fields
    root_cause_analysis = Column(Text, nullable=True)
    corrective_actions = Column(Text, nullable=True)
    preventive_actions = Column(Text, nullable=True)
    implementation_notes = Column(Text, nullable=True)

    # Effectiveness verification (verified_by_id must differ from created_by_id)
    verification_notes = Column(Text, nullable=True)
    is_effective = Column(Boolean, nullable=True)
    verified_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_at = Column(DateTime, nullable=True)

    # Audit fields
    created_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("tenant_id", "capa_number", name="unique_tenant_capa_number"),
    )

    def __repr__(self) -> str:
        return f"<Capa {self.capa_number}: {self.status.value if self.status else None}>"


class Document(Base):
    """Controlled document with a single-approver workflow.

    Approve/reject are only valid for ``current_approver_id``.
    """

    __tablename__ = "documents"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    document_number = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    status = Column(Enum(DocumentStatus, values_callable=_enum_values), nullable=False, default=DocumentStatus.DRAFT, index=True)
    current_version = Column(Integer, nullable=False, default=1)
    current_approver_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    target_department_id = Column(Uuid, ForeignKey("organization_units.id", ondelete="SET NULL"), nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approved_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    archived_at = Column(DateTime, nullable=True)
    archived_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    archive_reason = Column(Text, nullable=True)

    # Audit fields
    created_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    updated_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    version = Column(Integer, nullable=False)

    versions = relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentVersion.version_number",
    )
    approvals = relationship(
        "DocumentApproval",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentApproval.decided_at",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("tenant_id", "document_number", name="unique_tenant_document_number"),
    )

    def __repr__(self) -> str:
        return f"<Document {self.document_number}: {self.status.value if self.status else None}>"


class DocumentVersion(Base):
    """Immutable content snapshot taken on every submission."""

    __tablename__ = "document_versions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    document_id = Column(Uuid, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    content = Column(Text, nullable=True)
    change_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    created_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    document = relationship("Document", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="unique_document_version_number"),
    )

    def __repr__(self) -> str:
        return f"<DocumentVersion {self.document_id} v{self.version_number}>"


class DocumentApproval(Base):
    """Approval or rejection decision recorded against a document."""

    __tablename__ = "document_approvals"

    id = Column(Uuid, primary_key=True, default=uuid4)
    document_id = Column(Uuid, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    approver_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_approved = Column(Boolean, nullable=False)
    comments = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=False, default=utcnow)

    document = relationship("Document", back_populates="approvals")

    def __repr__(self) -> str:
        return f"<DocumentApproval {self.document_id}: {'approved' if self.is_approved else 'rejected'}>"


class Task(Base):
    """Assignable work item with reviewer approval.

    ``status`` may lag behind the derived OVERDUE state until
    ``qms_core.task.mark_overdue`` records it.
    """

    __tablename__ = "tasks"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    task_number = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Enum(TaskStatus, values_callable=_enum_values), nullable=False, default=TaskStatus.OPEN, index=True)
    priority = Column(Enum(TaskPriority, values_callable=_enum_values), nullable=False, default=TaskPriority.MEDIUM)
    assigned_to_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    due_date = Column(DateTime, nullable=True, index=True)

    completed_at = Column(DateTime, nullable=True)
    completed_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    completion_notes = Column(Text, nullable=True)
    reviewer_remarks = Column(Text, nullable=True)

    linked_document_id = Column(Uuid, ForeignKey("documents.id", ondelete="SET NULL"), nullable=True)
    linked_capa_id = Column(Uuid, ForeignKey("capas.id", ondelete="SET NULL"), nullable=True)

    # Audit fields
    created_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("tenant_id", "task_number", name="unique_tenant_task_number"),
    )

    def __repr__(self) -> str:
        return f"<Task {self.task_number}: {self.title[:30]}>"
