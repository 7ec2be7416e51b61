"""Tests for the authorization engine."""
from datetime import timedelta
from uuid import uuid4

import pytest

from qms_core import capa as capa_ops
from qms_core import document as document_ops
from qms_core import task as task_ops
from qms_core.authorization import AuthorizationEngine
from qms_core.config import DelegationPolicy
from qms_core.errors import ErrorKind
from qms_core.events import EventKind
from qms_core.models import CapaStatus, DocumentStatus
from qms_core.permissions import (
    Audits,
    Capa,
    DefaultRoles,
    Documents,
    Operation,
    PermissionCatalog,
    Tasks,
    Users,
)


@pytest.fixture
def org(make_user):
    """director ← manager ← staff, plus an unrelated peer manager."""
    director = make_user("director", DefaultRoles.TOP_MANAGING_DIRECTOR)
    manager = make_user("manager", DefaultRoles.DEPUTY_DIRECTOR, manager=director)
    staff = make_user("staff", DefaultRoles.JUNIOR_STAFF, manager=manager)
    peer = make_user("peer", DefaultRoles.DEPARTMENT_MANAGER, manager=director)
    auditor = make_user("auditor", DefaultRoles.AUDITOR)
    return director, manager, staff, peer, auditor


class TestEffectivePermissions:
    """Test role-derived and delegated permission resolution."""

    def test_role_permissions(self, authz, org, catalog):
        _, _, staff, _, _ = org
        assert authz.effective_permissions(staff.id) == catalog.permissions_of(DefaultRoles.JUNIOR_STAFF)

    def test_has_permission_matches_catalog(self, authz, org, catalog):
        """For every user, has_permission(p) iff p comes from their role."""
        for user in org:
            role = user.roles[0].name
            for permission in catalog.all_permissions():
                assert authz.has_permission(user.id, permission) == (permission in catalog.permissions_of(role))

    def test_auditor_can_create_audit(self, authz, org):
        *_, auditor = org
        assert authz.has_permission(auditor.id, Audits.CREATE)
        assert authz.authorize(auditor.id, Operation.CREATE_AUDIT).ok

    def test_multiple_roles_union(self, db, make_user, roles, catalog, clock):
        user = make_user("both", DefaultRoles.AUDITOR, DefaultRoles.JUNIOR_STAFF)
        engine = AuthorizationEngine(db, catalog, clock=clock)
        assert engine.has_permission(user.id, Audits.CREATE)
        assert engine.has_permission(user.id, Tasks.COMPLETE)

    def test_unknown_actor_has_nothing(self, authz):
        assert authz.effective_permissions(uuid4()) == frozenset()
        assert not authz.has_permission(None, Documents.VIEW)

    def test_inactive_user_has_nothing(self, authz, make_user):
        user = make_user("gone", DefaultRoles.TOP_MANAGING_DIRECTOR, is_active=False)
        assert authz.effective_permissions(user.id) == frozenset()

    def test_any_and_all(self, authz, org):
        _, _, staff, _, _ = org
        assert authz.has_any_permission(staff.id, [Documents.APPROVE, Documents.VIEW])
        assert not authz.has_all_permissions(staff.id, [Documents.APPROVE, Documents.VIEW])
        assert authz.has_all_permissions(staff.id, [Documents.VIEW, Tasks.COMPLETE])

    def test_empty_lists(self, authz, org):
        _, _, staff, _, _ = org
        assert not authz.has_any_permission(staff.id, [])
        assert authz.has_all_permissions(staff.id, [])

    def test_custom_catalog(self, db, make_user, clock):
        user = make_user("auditor", DefaultRoles.AUDITOR)
        engine = AuthorizationEngine(db, PermissionCatalog.from_mapping({DefaultRoles.AUDITOR: [Audits.VIEW]}), clock=clock)
        assert engine.has_permission(user.id, Audits.VIEW)
        assert not engine.has_permission(user.id, Audits.CREATE)


class TestAuthorize:
    """Test operation gating."""

    def test_no_actor_is_unauthorized(self, authz):
        assert authz.authorize(None, Operation.VIEW_DOCUMENTS).error == ErrorKind.UNAUTHORIZED

    def test_denied_is_forbidden_without_permission_names(self, authz, org):
        _, _, staff, _, _ = org
        result = authz.authorize(staff.id, Operation.CREATE_AUDIT)
        assert result.error == ErrorKind.FORBIDDEN
        assert Audits.CREATE not in str(result.detail)

    def test_any_mode(self, authz, org):
        *_, auditor = org
        # Auditor has Documents.View and Documents.ViewAll; either suffices
        assert authz.authorize(auditor.id, Operation.VIEW_DOCUMENTS).ok

    def test_all_mode(self, db, make_user, clock):
        user = make_user("editor", DefaultRoles.JUNIOR_STAFF)
        engine = AuthorizationEngine(
            db,
            PermissionCatalog.from_mapping({DefaultRoles.JUNIOR_STAFF: [Documents.EDIT]}),
            clock=clock,
        )
        assert engine.authorize(user.id, Operation.MANAGE_DOCUMENT_VERSIONS).error == ErrorKind.FORBIDDEN

    def test_tenant_mismatch_is_forbidden(self, authz, org, other_tenant):
        *_, auditor = org
        assert authz.authorize(auditor.id, Operation.CREATE_AUDIT, tenant_id=other_tenant.id).error == ErrorKind.FORBIDDEN


class TestVisibility:
    """Test hierarchy-scoped user visibility."""

    def test_visible_user_ids(self, authz, org):
        director, manager, staff, peer, _ = org
        assert authz.visible_user_ids(director.id) == {director.id, manager.id, staff.id, peer.id}
        assert authz.visible_user_ids(manager.id) == {manager.id, staff.id}

    def test_can_view_user(self, authz, org):
        director, manager, staff, peer, auditor = org
        assert authz.can_view_user(staff.id, staff.id)
        assert authz.can_view_user(manager.id, staff.id)
        assert not authz.can_view_user(peer.id, staff.id)
        # Users.ViewAll
        assert authz.can_view_user(director.id, auditor.id)

    def test_can_view_subordinate_needs_view_all(self, authz, org):
        director, manager, staff, _, _ = org
        assert authz.can_view_subordinate(director.id, staff.id)
        # Deputy lacks Users.ViewAll
        assert not authz.can_view_subordinate(manager.id, staff.id)

    def test_cross_tenant_user_invisible(self, authz, org, make_user, other_tenant):
        director, *_ = org
        foreign = make_user("foreign", tenant_id=other_tenant.id)
        assert not authz.can_view_user(director.id, foreign.id)


class TestDocumentCapabilities:
    """Test document operation gating."""

    @pytest.fixture
    def doc(self, db, tenant, org):
        _, manager, staff, _, _ = org
        return document_ops.create_document(db, tenant.id, staff.id, "Cleaning SOP", "SOP-001", content="v1")

    def test_creator_edits_draft(self, authz, org, doc):
        _, _, staff, peer, _ = org
        assert authz.can_edit_document(staff.id, doc)
        assert not authz.can_edit_document(peer.id, doc)

    def test_view_all_override_edits_draft(self, authz, org, doc):
        *_, auditor = org
        assert authz.can_edit_document(auditor.id, doc)

    @pytest.mark.parametrize("status", [DocumentStatus.SUBMITTED, DocumentStatus.APPROVED, DocumentStatus.ARCHIVED])
    def test_locked_states_never_editable(self, authz, org, doc, status):
        _, _, staff, _, auditor = org
        doc.status = status
        assert not authz.can_edit_document(staff.id, doc)
        assert not authz.can_edit_document(auditor.id, doc)

    def test_rejected_is_editable(self, authz, org, doc):
        _, _, staff, _, _ = org
        doc.status = DocumentStatus.REJECTED
        assert authz.can_edit_document(staff.id, doc)

    def test_only_current_approver_approves(self, authz, org, doc):
        """Documents.ViewAll does not let anyone but the approver decide."""
        director, manager, staff, peer, auditor = org
        document_ops.submit(doc, staff.id, approver_id=peer.id)
        assert authz.can_approve_document(peer.id, doc)
        assert authz.can_reject_document(peer.id, doc)
        for other in (director, manager, staff, auditor):
            assert not authz.can_approve_document(other.id, doc)
        assert authz.has_permission(director.id, Documents.VIEW_ALL)

    def test_approver_cannot_approve_draft(self, authz, org, doc):
        _, _, _, peer, _ = org
        doc.current_approver_id = peer.id
        assert not authz.can_approve_document(peer.id, doc)

    def test_view_document(self, authz, org, doc):
        director, manager, staff, peer, auditor = org
        assert authz.can_view_document(staff.id, doc)      # creator
        assert authz.can_view_document(manager.id, doc)    # ViewAll
        assert authz.can_view_document(auditor.id, doc)    # ViewAll
        assert not authz.can_view_document(peer.id, doc)   # View, but creator not visible
        document_ops.submit(doc, staff.id, approver_id=peer.id)
        assert authz.can_view_document(peer.id, doc)       # current approver

    def test_view_document_by_id(self, db, authz, org, doc):
        _, _, staff, _, _ = org
        db.flush()
        assert authz.can_view_document(staff.id, doc.id)
        assert not authz.can_view_document(staff.id, uuid4())

    def test_submit(self, authz, org, doc):
        _, manager, staff, _, _ = org
        assert authz.can_submit_document(staff.id, doc)
        assert not authz.can_submit_document(manager.id, doc)

    def test_archive_and_delete(self, authz, org, doc):
        director, *_ = org
        assert not authz.can_archive_document(director.id, doc)
        doc.status = DocumentStatus.APPROVED
        assert authz.can_archive_document(director.id, doc)
        # Nobody in the default roles holds Documents.Delete
        assert not authz.can_delete_document(director.id, doc)

    def test_foreign_tenant_document(self, db, authz, org, other_tenant, make_user):
        *_, auditor = org
        foreign = make_user("foreign", tenant_id=other_tenant.id)
        doc = document_ops.create_document(db, other_tenant.id, foreign.id, "X", "SOP-X")
        assert not authz.can_view_document(auditor.id, doc)
        assert not authz.can_edit_document(auditor.id, doc)


class TestTaskCapabilities:
    """Test task operation gating."""

    @pytest.fixture
    def task(self, db, tenant, org):
        _, manager, _, _, _ = org
        return task_ops.create_task(db, tenant.id, manager.id, "Calibrate scale", "TSK-001")

    def test_view_task(self, authz, org, task):
        director, manager, staff, peer, _ = org
        assert authz.can_view_task(manager.id, task)       # creator
        assert authz.can_view_task(director.id, task)      # Tasks.ViewAll
        assert not authz.can_view_task(staff.id, task)     # Tasks.View, creator not visible
        assert not authz.can_view_task(peer.id, task)
        task_ops.assign(task, manager.id, staff.id)
        assert authz.can_view_task(staff.id, task)         # assignee

    def test_view_task_through_hierarchy(self, db, tenant, authz, org, make_user):
        director, manager, staff, peer, _ = org
        peer_report = make_user("peer-report", DefaultRoles.JUNIOR_STAFF, manager=peer)
        task = task_ops.create_task(db, tenant.id, peer_report.id, "Inspect", "TSK-002")
        assert authz.can_view_task(peer.id, task)
        assert not authz.can_view_task(staff.id, task)

    def test_create_task(self, authz, org):
        _, manager, staff, _, _ = org
        assert authz.can_create_task(manager.id)
        assert not authz.can_create_task(staff.id)

    def test_assign_to_subordinate(self, authz, org, task):
        director, manager, staff, peer, _ = org
        assert authz.can_assign_task(peer.id, task, peer.id)
        assert not authz.can_assign_task(peer.id, task, staff.id)
        # Deputy holds Tasks.ViewAll
        assert authz.can_assign_task(manager.id, task, peer.id)

    def test_complete_and_review(self, authz, org, task):
        _, manager, staff, peer, _ = org
        task_ops.assign(task, manager.id, staff.id)
        assert authz.can_complete_task(staff.id, task)
        assert not authz.can_complete_task(peer.id, task)
        assert not authz.can_review_task(manager.id, task)

        task_ops.complete(task, staff.id, notes="done")
        assert authz.can_review_task(manager.id, task)
        assert not authz.can_review_task(peer.id, task)
        assert not authz.can_complete_task(staff.id, task)


class TestCapaCapabilities:
    """Test CAPA operation gating."""

    @pytest.fixture
    def capa(self, db, tenant, org):
        _, manager, _, _, _ = org
        return capa_ops.create_capa(db, tenant.id, manager.id, "Scale drift", "CAPA-001")

    def test_verify_not_by_creator(self, authz, org, capa):
        director, manager, *_ = org
        capa.status = CapaStatus.ACTIONS_IMPLEMENTED
        assert authz.can_verify_capa(director.id, capa)
        assert not authz.can_verify_capa(manager.id, capa)

    def test_close_after_verification(self, authz, org, capa):
        director, *_ = org
        assert not authz.can_close_capa(director.id, capa)
        capa.status = CapaStatus.EFFECTIVENESS_VERIFIED
        assert authz.can_close_capa(director.id, capa)

    def test_view_capa(self, authz, org, capa):
        director, manager, staff, peer, auditor = org
        assert authz.can_view_capa(manager.id, capa)
        assert authz.can_view_capa(auditor.id, capa)
        assert not authz.can_view_capa(staff.id, capa)

    def test_edit_and_delete(self, db, clock, org, capa):
        _, manager, *_ = org
        engine = AuthorizationEngine(
            db,
            PermissionCatalog.from_mapping({DefaultRoles.DEPUTY_DIRECTOR: [Capa.EDIT, Capa.DELETE]}),
            clock=clock,
        )
        assert engine.can_edit_capa(manager.id, capa)
        assert engine.can_delete_capa(manager.id, capa)
        capa.status = CapaStatus.EFFECTIVENESS_VERIFIED
        assert engine.can_edit_capa(manager.id, capa)
        assert not engine.can_delete_capa(manager.id, capa)
        capa.status = CapaStatus.CLOSED
        assert not engine.can_edit_capa(manager.id, capa)


class TestDelegatePermission:
    """Test delegation orchestration."""

    def test_delegate_then_revoke(self, authz, org, clock):
        """Delegated Tasks.ViewAll is effective immediately and gone right after revoke."""
        _, manager, staff, _, _ = org
        assert not authz.has_permission(staff.id, Tasks.VIEW_ALL)

        result = authz.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL, expires_after_days=3)
        assert result.ok
        assert [e.kind for e in result.events] == [EventKind.PERMISSION_DELEGATED]
        assert authz.has_permission(staff.id, Tasks.VIEW_ALL)

        revoked = authz.revoke_delegation(manager.id, result.value.id)
        assert revoked.ok
        assert [e.kind for e in revoked.events] == [EventKind.DELEGATION_REVOKED]
        assert not authz.has_permission(staff.id, Tasks.VIEW_ALL)

    def test_revoke_through_store_is_honoured(self, authz, org):
        """Revoking directly on the store is seen by the same engine instance."""
        _, manager, staff, _, _ = org
        delegation = authz.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL).value
        assert authz.has_permission(staff.id, Tasks.VIEW_ALL)

        assert authz.delegations.revoke(delegation.id, revoked_by_id=manager.id).ok
        assert authz.delegations.active_delegations_for(staff.id) == []
        assert not authz.has_permission(staff.id, Tasks.VIEW_ALL)

    def test_delegation_expires(self, db, catalog, authz, org, clock):
        _, manager, staff, _, _ = org
        authz.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL, expires_after_days=1)
        assert authz.has_permission(staff.id, Tasks.VIEW_ALL)
        clock.advance(hours=25)
        assert not authz.has_permission(staff.id, Tasks.VIEW_ALL)
        assert not AuthorizationEngine(db, catalog, clock=clock).has_permission(staff.id, Tasks.VIEW_ALL)

    def test_cannot_delegate_what_you_lack(self, authz, org):
        _, manager, staff, _, _ = org
        result = authz.delegate_permission(manager.id, staff.id, Documents.ARCHIVE)
        assert result.error == ErrorKind.FORBIDDEN

    def test_no_sub_delegation(self, authz, org, make_user):
        """A delegated permission cannot be passed on."""
        director, manager, staff, _, _ = org
        intern = make_user("intern", DefaultRoles.READ_ONLY, manager=staff)
        assert authz.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL).ok
        assert authz.has_permission(staff.id, Tasks.VIEW_ALL)

        result = authz.delegate_permission(staff.id, intern.id, Tasks.VIEW_ALL)
        assert result.error == ErrorKind.FORBIDDEN
        assert result.detail["reason"] == "permission_not_held"

    def test_only_to_subordinates(self, authz, org):
        director, manager, staff, peer, _ = org
        result = authz.delegate_permission(manager.id, peer.id, Tasks.VIEW_ALL)
        assert result.error == ErrorKind.FORBIDDEN
        assert result.detail["reason"] == "not_subordinate"

    def test_transitive_subordinate_allowed(self, authz, org):
        director, _, staff, _, _ = org
        assert authz.delegate_permission(director.id, staff.id, Documents.ARCHIVE).ok

    def test_subordinate_rule_can_be_disabled(self, db, catalog, clock, org):
        _, manager, _, peer, _ = org
        engine = AuthorizationEngine(db, catalog, policy=DelegationPolicy(require_subordinate=False), clock=clock)
        assert engine.delegate_permission(manager.id, peer.id, Tasks.VIEW_ALL).ok

    def test_self_delegation(self, authz, org):
        _, manager, *_ = org
        assert authz.delegate_permission(manager.id, manager.id, Tasks.VIEW_ALL).error == ErrorKind.VALIDATION

    def test_unknown_or_foreign_delegatee(self, authz, org, make_user, other_tenant):
        director, *_ = org
        foreign = make_user("foreign", tenant_id=other_tenant.id)
        assert authz.delegate_permission(director.id, uuid4(), Tasks.VIEW_ALL).error == ErrorKind.NOT_FOUND
        assert authz.delegate_permission(director.id, foreign.id, Tasks.VIEW_ALL).error == ErrorKind.NOT_FOUND

    def test_no_actor(self, authz, org):
        _, _, staff, _, _ = org
        assert authz.delegate_permission(None, staff.id, Tasks.VIEW_ALL).error == ErrorKind.UNAUTHORIZED

    def test_negative_expiry(self, authz, org):
        _, manager, staff, _, _ = org
        result = authz.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL, expires_after_days=-2)
        assert result.error == ErrorKind.VALIDATION

    def test_policy_default_expiry(self, db, catalog, clock, org):
        _, manager, staff, _, _ = org
        engine = AuthorizationEngine(db, catalog, policy=DelegationPolicy(default_expiry_days=7), clock=clock)
        delegation = engine.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL).value
        assert delegation.expires_at == clock.now + timedelta(days=7)

    def test_policy_max_expiry(self, db, catalog, clock, org):
        _, manager, staff, _, _ = org
        engine = AuthorizationEngine(db, catalog, policy=DelegationPolicy(max_expiry_days=30), clock=clock)
        too_long = engine.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL, expires_after_days=31)
        assert too_long.error == ErrorKind.VALIDATION
        capped = engine.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL).value
        assert capped.expires_at == clock.now + timedelta(days=30)

    def test_only_delegator_revokes(self, authz, org):
        director, manager, staff, _, _ = org
        delegation = authz.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL).value
        assert authz.revoke_delegation(director.id, delegation.id).error == ErrorKind.FORBIDDEN
        assert authz.has_permission(staff.id, Tasks.VIEW_ALL)

    def test_double_revoke_emits_once(self, authz, org):
        _, manager, staff, _, _ = org
        delegation = authz.delegate_permission(manager.id, staff.id, Tasks.VIEW_ALL).value
        assert len(authz.revoke_delegation(manager.id, delegation.id).events) == 1
        second = authz.revoke_delegation(manager.id, delegation.id)
        assert second.ok
        assert second.events == []

    def test_revoke_unknown(self, authz, org):
        _, manager, *_ = org
        assert authz.revoke_delegation(manager.id, uuid4()).error == ErrorKind.NOT_FOUND

    def test_delegated_permission_gates_operation(self, authz, org):
        director, _, staff, _, _ = org
        assert authz.authorize(staff.id, Operation.ARCHIVE_DOCUMENT).error == ErrorKind.FORBIDDEN
        authz.delegate_permission(director.id, staff.id, Documents.ARCHIVE)
        assert authz.authorize(staff.id, Operation.ARCHIVE_DOCUMENT).ok

    def test_users_view_all_operation(self, authz, org):
        director, manager, *_ = org
        assert authz.authorize(director.id, Operation.DELEGATE_PERMISSION).ok
        assert authz.has_permission(director.id, Users.VIEW_ALL)
