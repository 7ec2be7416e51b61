"""Permission catalog and operation → permission table.

Permissions are opaque strings named ``Area.Action``. The hierarchical naming
is cosmetic only: ``Documents.View`` and ``Documents.ViewAll`` are unrelated
grants, and no prefix matching is ever performed.

The catalog maps role names to permission sets. It is loaded once at startup
(built-in defaults or a YAML file) and handed to the authorization engine as
an immutable value.
"""
import enum
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, NamedTuple, Union
from uuid import UUID

import yaml
from sqlalchemy.orm import Session

from . import models
from .persistence import infrastructure_guard
from .schemas import RoleCatalogFile

logger = logging.getLogger("qms-core.permissions")


class Documents:
    VIEW = "Documents.View"
    CREATE = "Documents.Create"
    EDIT = "Documents.Edit"
    DELETE = "Documents.Delete"
    SUBMIT = "Documents.Submit"
    APPROVE = "Documents.Approve"
    REJECT = "Documents.Reject"
    ARCHIVE = "Documents.Archive"
    VIEW_ALL = "Documents.ViewAll"
    MANAGE_VERSIONS = "Documents.ManageVersions"


class Tasks:
    VIEW = "Tasks.View"
    CREATE = "Tasks.Create"
    EDIT = "Tasks.Edit"
    DELETE = "Tasks.Delete"
    ASSIGN = "Tasks.Assign"
    COMPLETE = "Tasks.Complete"
    VIEW_ALL = "Tasks.ViewAll"


class Audits:
    VIEW = "Audits.View"
    CREATE = "Audits.Create"
    EDIT = "Audits.Edit"
    DELETE = "Audits.Delete"
    CONDUCT = "Audits.Conduct"
    ADD_FINDINGS = "Audits.AddFindings"
    CLOSE_AUDIT = "Audits.CloseAudit"
    VIEW_ALL = "Audits.ViewAll"


class Capa:
    VIEW = "Capa.View"
    CREATE = "Capa.Create"
    EDIT = "Capa.Edit"
    DELETE = "Capa.Delete"
    ASSIGN = "Capa.Assign"
    VERIFY = "Capa.Verify"
    CLOSE = "Capa.Close"
    VIEW_ALL = "Capa.ViewAll"


class Users:
    VIEW = "Users.View"
    CREATE = "Users.Create"
    EDIT = "Users.Edit"
    DELETE = "Users.Delete"
    MANAGE_ROLES = "Users.ManageRoles"
    VIEW_ALL = "Users.ViewAll"
    UNLOCK = "Users.Unlock"
    RESET_PASSWORD = "Users.ResetPassword"


class Roles:
    VIEW = "Roles.View"
    CREATE = "Roles.Create"
    EDIT = "Roles.Edit"
    DELETE = "Roles.Delete"
    MANAGE_PERMISSIONS = "Roles.ManagePermissions"


class Organization:
    VIEW = "Organization.View"
    CREATE = "Organization.Create"
    EDIT = "Organization.Edit"
    DELETE = "Organization.Delete"
    MANAGE_HIERARCHY = "Organization.ManageHierarchy"


class Reports:
    VIEW = "Reports.View"
    CREATE = "Reports.Create"
    EXPORT = "Reports.Export"
    VIEW_ALL = "Reports.ViewAll"


class AuditLogs:
    VIEW = "AuditLogs.View"
    EXPORT = "AuditLogs.Export"


class System:
    MANAGE_SETTINGS = "System.ManageSettings"
    MANAGE_TENANTS = "System.ManageTenants"
    VIEW_SYSTEM_HEALTH = "System.ViewSystemHealth"


PERMISSION_AREAS = (Documents, Tasks, Audits, Capa, Users, Roles, Organization, Reports, AuditLogs, System)


class DefaultRoles:
    """Built-in role names."""

    SYSTEM_ADMIN = "SystemAdmin"
    TENANT_ADMIN = "TenantAdmin"
    TOP_MANAGING_DIRECTOR = "TopManagingDirector"
    DEPUTY_DIRECTOR = "DeputyDirector"
    DEPARTMENT_MANAGER = "DepartmentManager"
    JUNIOR_STAFF = "JuniorStaff"
    AUDITOR = "Auditor"
    READ_ONLY = "ReadOnly"


# Default role → permissions table, in declaration order
DEFAULT_ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    DefaultRoles.SYSTEM_ADMIN: (
        System.MANAGE_SETTINGS,
        System.MANAGE_TENANTS,
        System.VIEW_SYSTEM_HEALTH,
        Users.VIEW_ALL,
        Users.CREATE,
        Users.EDIT,
        Users.DELETE,
        Users.MANAGE_ROLES,
        Users.UNLOCK,
        Users.RESET_PASSWORD,
        Roles.VIEW,
        Roles.CREATE,
        Roles.EDIT,
        Roles.DELETE,
        Roles.MANAGE_PERMISSIONS,
        Organization.VIEW,
        Organization.CREATE,
        Organization.EDIT,
        Organization.DELETE,
        Organization.MANAGE_HIERARCHY,
        AuditLogs.VIEW,
        AuditLogs.EXPORT,
    ),
    DefaultRoles.TENANT_ADMIN: (
        Users.VIEW_ALL,
        Users.CREATE,
        Users.EDIT,
        Users.MANAGE_ROLES,
        Users.UNLOCK,
        Users.RESET_PASSWORD,
        Roles.VIEW,
        Roles.CREATE,
        Roles.EDIT,
        Roles.MANAGE_PERMISSIONS,
        Organization.VIEW,
        Organization.CREATE,
        Organization.EDIT,
        Organization.MANAGE_HIERARCHY,
        Documents.VIEW_ALL,
        Tasks.VIEW_ALL,
        Audits.VIEW_ALL,
        Capa.VIEW_ALL,
        Reports.VIEW_ALL,
        AuditLogs.VIEW,
        AuditLogs.EXPORT,
    ),
    DefaultRoles.TOP_MANAGING_DIRECTOR: (
        # Full document access
        Documents.VIEW,
        Documents.CREATE,
        Documents.EDIT,
        Documents.SUBMIT,
        Documents.APPROVE,
        Documents.REJECT,
        Documents.ARCHIVE,
        Documents.VIEW_ALL,
        # Full task access
        Tasks.VIEW,
        Tasks.CREATE,
        Tasks.EDIT,
        Tasks.ASSIGN,
        Tasks.COMPLETE,
        Tasks.VIEW_ALL,
        # Full audit access
        Audits.VIEW,
        Audits.CREATE,
        Audits.CLOSE_AUDIT,
        Audits.VIEW_ALL,
        # Full CAPA access
        Capa.VIEW,
        Capa.CREATE,
        Capa.VERIFY,
        Capa.CLOSE,
        Capa.VIEW_ALL,
        # User management (limited)
        Users.VIEW,
        Users.VIEW_ALL,
        Reports.VIEW,
        Reports.CREATE,
        Reports.EXPORT,
        Reports.VIEW_ALL,
        Organization.VIEW,
        AuditLogs.VIEW,
    ),
    DefaultRoles.DEPUTY_DIRECTOR: (
        Documents.VIEW,
        Documents.CREATE,
        Documents.EDIT,
        Documents.SUBMIT,
        Documents.APPROVE,
        Documents.REJECT,
        Documents.VIEW_ALL,
        Tasks.VIEW,
        Tasks.CREATE,
        Tasks.EDIT,
        Tasks.ASSIGN,
        Tasks.COMPLETE,
        Tasks.VIEW_ALL,
        Audits.VIEW,
        Audits.VIEW_ALL,
        Capa.VIEW,
        Capa.CREATE,
        Capa.VIEW_ALL,
        Users.VIEW,
        Reports.VIEW,
        Reports.CREATE,
        Reports.EXPORT,
        Organization.VIEW,
    ),
    DefaultRoles.DEPARTMENT_MANAGER: (
        Documents.VIEW,
        Documents.CREATE,
        Documents.EDIT,
        Documents.SUBMIT,
        Documents.APPROVE,
        Documents.REJECT,
        Tasks.VIEW,
        Tasks.CREATE,
        Tasks.EDIT,
        Tasks.ASSIGN,
        Tasks.COMPLETE,
        Audits.VIEW,
        Capa.VIEW,
        Capa.CREATE,
        Capa.ASSIGN,
        Users.VIEW,
        Reports.VIEW,
        Reports.CREATE,
        Organization.VIEW,
    ),
    DefaultRoles.JUNIOR_STAFF: (
        Documents.VIEW,
        Documents.CREATE,
        Documents.EDIT,
        Documents.SUBMIT,
        Tasks.VIEW,
        Tasks.COMPLETE,
        Capa.VIEW,
    ),
    DefaultRoles.AUDITOR: (
        Documents.VIEW,
        Documents.VIEW_ALL,
        Audits.VIEW,
        Audits.CREATE,
        Audits.EDIT,
        Audits.CONDUCT,
        Audits.ADD_FINDINGS,
        Audits.CLOSE_AUDIT,
        Audits.VIEW_ALL,
        Capa.VIEW,
        Capa.VIEW_ALL,
        Reports.VIEW,
        Reports.EXPORT,
        AuditLogs.VIEW,
        AuditLogs.EXPORT,
    ),
    DefaultRoles.READ_ONLY: (
        Documents.VIEW,
        Tasks.VIEW,
        Audits.VIEW,
        Capa.VIEW,
        Reports.VIEW,
    ),
}


def all_defined_permissions() -> frozenset[str]:
    """Every permission constant declared in the area classes above."""
    return frozenset(
        value
        for area in PERMISSION_AREAS
        for name, value in vars(area).items()
        if name.isupper() and isinstance(value, str)
    )


class PermissionCatalog:
    """
    Immutable role → permission mapping.

    Unknown roles resolve to the empty set; there is no other failure mode.
    """

    def __init__(self, role_permissions: Mapping[str, Iterable[str]]):
        ordered = {}
        for role, permissions in role_permissions.items():
            # Keep first occurrence order, drop duplicates
            ordered[role] = tuple(dict.fromkeys(permissions))
        self._ordered = MappingProxyType(ordered)
        self._sets = MappingProxyType({role: frozenset(perms) for role, perms in ordered.items()})

    def permissions_of(self, role: str) -> frozenset[str]:
        return self._sets.get(role, frozenset())

    def ordered_permissions(self, role: str) -> tuple[str, ...]:
        """Role permissions in declaration order (for display)."""
        return self._ordered.get(role, ())

    def permissions_for_roles(self, roles: Iterable[str]) -> frozenset[str]:
        result: set[str] = set()
        for role in roles:
            result |= self.permissions_of(role)
        return frozenset(result)

    def roles(self) -> list[str]:
        return list(self._ordered.keys())

    def all_permissions(self) -> frozenset[str]:
        return self.permissions_for_roles(self._sets.keys())

    def is_known_permission(self, permission: str) -> bool:
        return permission in self.all_permissions() or permission in all_defined_permissions()

    def as_dict(self) -> dict[str, list[str]]:
        return {role: list(perms) for role, perms in self._ordered.items()}

    def __contains__(self, role: object) -> bool:
        return role in self._sets

    def __len__(self) -> int:
        return len(self._sets)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PermissionCatalog):
            return NotImplemented
        return dict(self._sets) == dict(other._sets)

    def __repr__(self) -> str:
        return f"<PermissionCatalog roles={len(self)}>"

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> "PermissionCatalog":
        return cls(mapping)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PermissionCatalog":
        """
        Load a catalog from a YAML file.

        Expected format::

            roles:
              Auditor:
                - Audits.View
                - Audits.Create

        Args:
            path: Path to the YAML file

        Returns:
            PermissionCatalog built from the file

        Raises:
            ValueError: If the file does not match the expected format
        """
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        parsed = RoleCatalogFile.model_validate(raw)
        logger.info(f"Loaded role catalog from {path} ({len(parsed.roles)} roles)")
        return cls(parsed.roles)


def default_catalog() -> PermissionCatalog:
    """Catalog with the built-in default roles."""
    return PermissionCatalog(DEFAULT_ROLE_PERMISSIONS)


# =============================================================================
# Operation table
# =============================================================================


class PermissionMode(str, enum.Enum):
    ANY = "any"
    ALL = "all"


class RequiredPermissions(NamedTuple):
    """Permissions an operation requires, and whether any or all must be held."""

    permissions: tuple[str, ...]
    mode: PermissionMode = PermissionMode.ANY


class Operation(str, enum.Enum):
    """Host operation identifiers gated by the authorization engine."""

    # Documents
    VIEW_DOCUMENTS = "view-documents"
    CREATE_DOCUMENT = "create-document"
    EDIT_DOCUMENT = "edit-document"
    DELETE_DOCUMENT = "delete-document"
    SUBMIT_DOCUMENT = "submit-document"
    APPROVE_DOCUMENT = "approve-document"
    REJECT_DOCUMENT = "reject-document"
    ARCHIVE_DOCUMENT = "archive-document"
    MANAGE_DOCUMENT_VERSIONS = "manage-document-versions"

    # Tasks
    VIEW_TASKS = "view-tasks"
    CREATE_TASK = "create-task"
    EDIT_TASK = "edit-task"
    DELETE_TASK = "delete-task"
    ASSIGN_TASK = "assign-task"
    COMPLETE_TASK = "complete-task"
    APPROVE_TASK = "approve-task"
    REJECT_TASK = "reject-task"

    # Audits
    VIEW_AUDITS = "view-audits"
    CREATE_AUDIT = "create-audit"
    EDIT_AUDIT = "edit-audit"
    DELETE_AUDIT = "delete-audit"
    CONDUCT_AUDIT = "conduct-audit"
    ADD_AUDIT_FINDINGS = "add-audit-findings"
    CLOSE_AUDIT = "close-audit"

    # CAPA
    VIEW_CAPAS = "view-capas"
    CREATE_CAPA = "create-capa"
    EDIT_CAPA = "edit-capa"
    DELETE_CAPA = "delete-capa"
    ASSIGN_CAPA = "assign-capa"
    VERIFY_CAPA = "verify-capa"
    CLOSE_CAPA = "close-capa"

    # Users / roles / organization
    VIEW_USERS = "view-users"
    CREATE_USER = "create-user"
    EDIT_USER = "edit-user"
    DELETE_USER = "delete-user"
    MANAGE_USER_ROLES = "manage-user-roles"
    UNLOCK_USER = "unlock-user"
    RESET_USER_PASSWORD = "reset-user-password"
    DELEGATE_PERMISSION = "delegate-permission"
    REVOKE_DELEGATION = "revoke-delegation"
    VIEW_DELEGATIONS = "view-delegations"
    VIEW_ROLES = "view-roles"
    MANAGE_ROLES = "manage-roles"
    VIEW_ORGANIZATION = "view-organization"
    MANAGE_ORGANIZATION = "manage-organization"
    MANAGE_HIERARCHY = "manage-hierarchy"

    # Reports / audit logs / system
    VIEW_REPORTS = "view-reports"
    CREATE_REPORT = "create-report"
    EXPORT_REPORT = "export-report"
    VIEW_AUDIT_LOGS = "view-audit-logs"
    EXPORT_AUDIT_LOGS = "export-audit-logs"
    MANAGE_SETTINGS = "manage-settings"
    MANAGE_TENANTS = "manage-tenants"
    VIEW_SYSTEM_HEALTH = "view-system-health"


def _any(*permissions: str) -> RequiredPermissions:
    return RequiredPermissions(permissions, PermissionMode.ANY)


def _all(*permissions: str) -> RequiredPermissions:
    return RequiredPermissions(permissions, PermissionMode.ALL)


OPERATION_PERMISSIONS: dict[Operation, RequiredPermissions] = {
    Operation.VIEW_DOCUMENTS: _any(Documents.VIEW, Documents.VIEW_ALL),
    Operation.CREATE_DOCUMENT: _any(Documents.CREATE),
    Operation.EDIT_DOCUMENT: _any(Documents.EDIT),
    Operation.DELETE_DOCUMENT: _any(Documents.DELETE),
    Operation.SUBMIT_DOCUMENT: _any(Documents.SUBMIT),
    Operation.APPROVE_DOCUMENT: _any(Documents.APPROVE),
    Operation.REJECT_DOCUMENT: _any(Documents.REJECT),
    Operation.ARCHIVE_DOCUMENT: _any(Documents.ARCHIVE),
    Operation.MANAGE_DOCUMENT_VERSIONS: _all(Documents.EDIT, Documents.MANAGE_VERSIONS),

    Operation.VIEW_TASKS: _any(Tasks.VIEW, Tasks.VIEW_ALL),
    Operation.CREATE_TASK: _any(Tasks.CREATE),
    Operation.EDIT_TASK: _any(Tasks.EDIT),
    Operation.DELETE_TASK: _any(Tasks.DELETE),
    Operation.ASSIGN_TASK: _any(Tasks.ASSIGN),
    Operation.COMPLETE_TASK: _any(Tasks.COMPLETE),
    Operation.APPROVE_TASK: _any(Tasks.EDIT),
    Operation.REJECT_TASK: _any(Tasks.EDIT),

    Operation.VIEW_AUDITS: _any(Audits.VIEW, Audits.VIEW_ALL),
    Operation.CREATE_AUDIT: _any(Audits.CREATE),
    Operation.EDIT_AUDIT: _any(Audits.EDIT),
    Operation.DELETE_AUDIT: _any(Audits.DELETE),
    Operation.CONDUCT_AUDIT: _any(Audits.CONDUCT),
    Operation.ADD_AUDIT_FINDINGS: _any(Audits.ADD_FINDINGS),
    Operation.CLOSE_AUDIT: _any(Audits.CLOSE_AUDIT),

    Operation.VIEW_CAPAS: _any(Capa.VIEW, Capa.VIEW_ALL),
    Operation.CREATE_CAPA: _any(Capa.CREATE),
    Operation.EDIT_CAPA: _any(Capa.EDIT),
    Operation.DELETE_CAPA: _any(Capa.DELETE),
    Operation.ASSIGN_CAPA: _any(Capa.ASSIGN),
    Operation.VERIFY_CAPA: _any(Capa.VERIFY),
    Operation.CLOSE_CAPA: _any(Capa.CLOSE),

    Operation.VIEW_USERS: _any(Users.VIEW, Users.VIEW_ALL),
    Operation.CREATE_USER: _any(Users.CREATE),
    Operation.EDIT_USER: _any(Users.EDIT),
    Operation.DELETE_USER: _any(Users.DELETE),
    Operation.MANAGE_USER_ROLES: _any(Users.MANAGE_ROLES),
    Operation.UNLOCK_USER: _any(Users.UNLOCK),
    Operation.RESET_USER_PASSWORD: _any(Users.RESET_PASSWORD),
    Operation.DELEGATE_PERMISSION: _any(Users.VIEW_ALL),
    Operation.REVOKE_DELEGATION: _any(Users.VIEW_ALL),
    Operation.VIEW_DELEGATIONS: _any(Users.VIEW_ALL),
    Operation.VIEW_ROLES: _any(Roles.VIEW),
    Operation.MANAGE_ROLES: _all(Roles.EDIT, Roles.MANAGE_PERMISSIONS),
    Operation.VIEW_ORGANIZATION: _any(Organization.VIEW),
    Operation.MANAGE_ORGANIZATION: _any(Organization.CREATE, Organization.EDIT),
    Operation.MANAGE_HIERARCHY: _any(Organization.MANAGE_HIERARCHY),

    Operation.VIEW_REPORTS: _any(Reports.VIEW, Reports.VIEW_ALL),
    Operation.CREATE_REPORT: _any(Reports.CREATE),
    Operation.EXPORT_REPORT: _any(Reports.EXPORT),
    Operation.VIEW_AUDIT_LOGS: _any(AuditLogs.VIEW),
    Operation.EXPORT_AUDIT_LOGS: _any(AuditLogs.EXPORT),
    Operation.MANAGE_SETTINGS: _any(System.MANAGE_SETTINGS),
    Operation.MANAGE_TENANTS: _any(System.MANAGE_TENANTS),
    Operation.VIEW_SYSTEM_HEALTH: _any(System.VIEW_SYSTEM_HEALTH),
}


def required_permissions(operation: Operation) -> RequiredPermissions:
    """Look up the permissions an operation requires."""
    return OPERATION_PERMISSIONS[operation]


# =============================================================================
# Role seeding
# =============================================================================


def seed_roles(db: Session, tenant_id: UUID, catalog: PermissionCatalog) -> list[models.Role]:
    """
    Persist catalog roles for a tenant. Idempotent: roles that already exist
    are left untouched (roles are immutable once seeded).

    Args:
        db: Database session
        tenant_id: Tenant to seed
        catalog: Catalog to persist

    Returns:
        Roles for the tenant, in catalog order
    """
    with infrastructure_guard("seeding roles"):
        existing = {
            role.name: role
            for role in db.query(models.Role).filter(models.Role.tenant_id == tenant_id).all()
        }

        roles = []
        for name in catalog.roles():
            role = existing.get(name)
            if role is None:
                role = models.Role(tenant_id=tenant_id, name=name)
                role.permissions = [
                    models.RolePermission(permission=permission, position=position)
                    for position, permission in enumerate(catalog.ordered_permissions(name))
                ]
                db.add(role)
                logger.info(f"Seeded role {name} for tenant {tenant_id}")
            roles.append(role)

        db.flush()
    return roles


def catalog_from_rows(db: Session, tenant_id: UUID) -> PermissionCatalog:
    """Rebuild a catalog from a tenant's persisted roles."""
    with infrastructure_guard("loading roles"):
        roles = (
            db.query(models.Role)
            .filter(models.Role.tenant_id == tenant_id)
            .order_by(models.Role.created_at, models.Role.name)
            .all()
        )
        rows = {role.name: [rp.permission for rp in role.permissions] for role in roles}
    return PermissionCatalog(rows)