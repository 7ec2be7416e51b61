"""Initial schema: tenants, users, roles, delegations, CAPAs, documents and tasks.

Revision ID: 001
Revises:
Create Date: 2026-01-12

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tenants and organization
    op.create_table(
        'tenants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_tenants_slug', 'tenants', ['slug'])

    op.create_table(
        'organization_units',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('parent_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organization_units.id', ondelete='SET NULL')),
    )
    op.create_index('ix_organization_units_tenant_id', 'organization_units', ['tenant_id'])

    # Users with the manager link that forms the reporting hierarchy
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(255)),
        sa.Column('manager_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('org_unit_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organization_units.id', ondelete='SET NULL')),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('manager_id IS NULL OR manager_id != id', name='no_self_manager'),
    )
    op.create_index('ix_users_tenant_id', 'users', ['tenant_id'])
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_manager_id', 'users', ['manager_id'])
    op.create_index('ix_users_org_unit_id', 'users', ['org_unit_id'])

    # Roles, seeded per tenant from the role catalog
    op.create_table(
        'roles',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('tenant_id', 'name', name='unique_tenant_role_name'),
    )
    op.create_index('ix_roles_tenant_id', 'roles', ['tenant_id'])

    op.create_table(
        'role_permissions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('role_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('permission', sa.String(100), nullable=False),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.UniqueConstraint('role_id', 'permission', name='unique_role_permission'),
    )
    op.create_index('ix_role_permissions_role_id', 'role_permissions', ['role_id'])

    op.create_table(
        'user_roles',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('role_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('assigned_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
    )

    # Permission delegations (never deleted; expiry evaluated at read time)
    op.create_table(
        'permission_delegations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('delegator_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('delegatee_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('permission', sa.String(100), nullable=False),
        sa.Column('granted_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime),
        sa.Column('revoked', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('revoked_at', sa.DateTime),
        sa.Column('revoked_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.CheckConstraint('delegator_id != delegatee_id', name='no_self_delegation'),
    )
    op.create_index('ix_permission_delegations_tenant_id', 'permission_delegations', ['tenant_id'])
    op.create_index('ix_permission_delegations_delegator_id', 'permission_delegations', ['delegator_id'])
    op.create_index('ix_permission_delegations_delegatee_id', 'permission_delegations', ['delegatee_id'])
    op.create_index(
        'ix_permission_delegations_delegatee_permission',
        'permission_delegations',
        ['delegatee_id', 'permission'],
    )

    # CAPAs (enums will be created automatically)
    op.create_table(
        'capas',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('capa_number', sa.String(50), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('capa_type', sa.Enum('corrective', 'preventive', 'both', name='capatype'), nullable=False, server_default='corrective'),
        sa.Column('priority', sa.Enum('low', 'medium', 'high', 'critical', name='capapriority'), nullable=False, server_default='medium'),
        sa.Column(
            'status',
            sa.Enum(
                'draft', 'under_investigation', 'actions_defined', 'actions_implemented',
                'effectiveness_verified', 'closed', name='capastatus',
            ),
            nullable=False,
            server_default='draft',
        ),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('source_audit_id', postgresql.UUID(as_uuid=True)),
        sa.Column('target_completion_date', sa.DateTime),
        sa.Column('actual_completion_date', sa.DateTime),
        sa.Column('root_cause_analysis', sa.Text),
        sa.Column('corrective_actions', sa.Text),
        sa.Column('preventive_actions', sa.Text),
        sa.Column('implementation_notes', sa.Text),
        sa.Column('verification_notes', sa.Text),
        sa.Column('is_effective', sa.Boolean),
        sa.Column('verified_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('verified_at', sa.DateTime),
        sa.Column('created_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.UniqueConstraint('tenant_id', 'capa_number', name='unique_tenant_capa_number'),
    )
    op.create_index('ix_capas_tenant_id', 'capas', ['tenant_id'])
    op.create_index('ix_capas_status', 'capas', ['status'])

    # Documents
    op.create_table(
        'documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('document_number', sa.String(50), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('content', sa.Text),
        sa.Column(
            'status',
            sa.Enum('draft', 'submitted', 'approved', 'rejected', 'archived', name='documentstatus'),
            nullable=False,
            server_default='draft',
        ),
        sa.Column('current_version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('current_approver_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('target_department_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organization_units.id', ondelete='SET NULL')),
        sa.Column('submitted_at', sa.DateTime),
        sa.Column('approved_at', sa.DateTime),
        sa.Column('approved_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('archived_at', sa.DateTime),
        sa.Column('archived_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('archive_reason', sa.Text),
        sa.Column('created_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.UniqueConstraint('tenant_id', 'document_number', name='unique_tenant_document_number'),
    )
    op.create_index('ix_documents_tenant_id', 'documents', ['tenant_id'])
    op.create_index('ix_documents_status', 'documents', ['status'])
    op.create_index('ix_documents_current_approver_id', 'documents', ['current_approver_id'])

    op.create_table(
        'document_versions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('document_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('version_number', sa.Integer, nullable=False),
        sa.Column('content', sa.Text),
        sa.Column('change_notes', sa.Text),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('created_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.UniqueConstraint('document_id', 'version_number', name='unique_document_version_number'),
    )
    op.create_index('ix_document_versions_document_id', 'document_versions', ['document_id'])

    op.create_table(
        'document_approvals',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('document_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('approver_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('is_approved', sa.Boolean, nullable=False),
        sa.Column('comments', sa.Text),
        sa.Column('decided_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_document_approvals_document_id', 'document_approvals', ['document_id'])

    # Tasks
    op.create_table(
        'tasks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_number', sa.String(50), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column(
            'status',
            sa.Enum(
                'open', 'in_progress', 'awaiting_approval', 'completed', 'rejected', 'cancelled', 'overdue',
                name='taskstatus',
            ),
            nullable=False,
            server_default='open',
        ),
        sa.Column('priority', sa.Enum('low', 'medium', 'high', 'urgent', name='taskpriority'), nullable=False, server_default='medium'),
        sa.Column('assigned_to_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('due_date', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('completed_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('completion_notes', sa.Text),
        sa.Column('reviewer_remarks', sa.Text),
        sa.Column('linked_document_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('documents.id', ondelete='SET NULL')),
        sa.Column('linked_capa_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('capas.id', ondelete='SET NULL')),
        sa.Column('created_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.UniqueConstraint('tenant_id', 'task_number', name='unique_tenant_task_number'),
    )
    op.create_index('ix_tasks_tenant_id', 'tasks', ['tenant_id'])
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('ix_tasks_assigned_to_id', 'tasks', ['assigned_to_id'])
    op.create_index('ix_tasks_due_date', 'tasks', ['due_date'])


def downgrade() -> None:
    # Drop tables
    op.drop_table('tasks')
    op.drop_table('document_approvals')
    op.drop_table('document_versions')
    op.drop_table('documents')
    op.drop_table('capas')
    op.drop_table('permission_delegations')
    op.drop_table('user_roles')
    op.drop_table('role_permissions')
    op.drop_table('roles')
    op.drop_table('users')
    op.drop_table('organization_units')
    op.drop_table('tenants')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS taskpriority')
    op.execute('DROP TYPE IF EXISTS taskstatus')
    op.execute('DROP TYPE IF EXISTS documentstatus')
    op.execute('DROP TYPE IF EXISTS capastatus')
    op.execute('DROP TYPE IF EXISTS capapriority')
    op.execute('DROP TYPE IF EXISTS capatype')
