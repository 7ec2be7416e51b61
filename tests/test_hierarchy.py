"""Tests for reporting hierarchy resolution and manager assignment."""
from uuid import uuid4

from qms_core.errors import ErrorKind
from qms_core.hierarchy import HierarchyResolver, assign_manager, find_manager_cycle


def chain():
    """A ← B ← C (C reports to B, B reports to A)."""
    a, b, c = uuid4(), uuid4(), uuid4()
    return a, b, c, HierarchyResolver({a: None, b: a, c: b})


class TestHierarchyResolver:
    """Test subordinate and visibility queries."""

    def test_recursive_subordinate(self):
        a, b, c, resolver = chain()
        assert resolver.is_subordinate(a, c, recursive=True)

    def test_non_recursive_is_direct_reports_only(self):
        a, b, c, resolver = chain()
        assert not resolver.is_subordinate(a, c, recursive=False)
        assert resolver.is_subordinate(a, b, recursive=False)

    def test_not_subordinate_upwards(self):
        a, b, c, resolver = chain()
        assert not resolver.is_subordinate(c, a)

    def test_actor_is_not_own_subordinate(self):
        a, b, c, resolver = chain()
        assert not resolver.is_subordinate(a, a)

    def test_visible_user_ids(self):
        a, b, c, resolver = chain()
        assert resolver.visible_user_ids(a) >= {a, b, c}
        assert resolver.visible_user_ids(c) == {c}

    def test_subordinate_ids_exclude_actor(self):
        a, b, c, resolver = chain()
        assert resolver.subordinate_ids(a) == {b, c}
        assert resolver.subordinate_ids(a, recursive=False) == {b}

    def test_no_cross_branch_visibility(self):
        """Siblings do not see each other's reports."""
        root, left, right, left_report = uuid4(), uuid4(), uuid4(), uuid4()
        resolver = HierarchyResolver({root: None, left: root, right: root, left_report: left})
        assert left_report not in resolver.visible_user_ids(right)
        assert resolver.visible_user_ids(root) == {root, left, right, left_report}

    def test_unknown_user_sees_only_self(self):
        a, b, c, resolver = chain()
        stranger = uuid4()
        assert resolver.visible_user_ids(stranger) == {stranger}

    def test_is_manager(self):
        a, b, c, resolver = chain()
        assert resolver.is_manager(a)
        assert resolver.is_manager(b)
        assert not resolver.is_manager(c)

    def test_manager_chain_nearest_first(self):
        a, b, c, resolver = chain()
        assert resolver.manager_chain(c) == [b, a]
        assert resolver.manager_chain(a) == []

    def test_department_user_ids(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        quality, production = uuid4(), uuid4()
        resolver = HierarchyResolver({a: None, b: a, c: a}, {a: quality, b: quality, c: production})
        assert resolver.department_user_ids(quality) == {a, b}


class TestCycleSafety:
    """Test that traversals terminate on cyclic data."""

    def test_visible_user_ids_terminates_on_cycle(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        resolver = HierarchyResolver({a: c, b: a, c: b})
        assert resolver.visible_user_ids(a) == {a, b, c}
        # Deterministic
        assert resolver.visible_user_ids(a) == resolver.visible_user_ids(a)

    def test_is_subordinate_terminates_on_cycle(self):
        a, b, c, outsider = uuid4(), uuid4(), uuid4(), uuid4()
        resolver = HierarchyResolver({a: b, b: a, c: b})
        assert not resolver.is_subordinate(outsider, c)
        assert resolver.is_subordinate(a, c)

    def test_manager_chain_terminates_on_cycle(self):
        a, b = uuid4(), uuid4()
        resolver = HierarchyResolver({a: b, b: a})
        assert resolver.manager_chain(a) == [b]


class TestFindManagerCycle:
    """Test cycle detection for manager assignment."""

    def test_self_management(self):
        a = uuid4()
        assert find_manager_cycle({}, a, a) == [a, a]

    def test_detects_cycle(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        # Making C manage A closes A ← B ← C ← A
        assert find_manager_cycle({a: None, b: a, c: b}, a, c) == [a, c, b, a]

    def test_no_cycle(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        assert find_manager_cycle({a: None, b: a, c: None}, c, b) is None

    def test_clearing_manager(self):
        assert find_manager_cycle({}, uuid4(), None) is None


class TestAssignManager:
    """Test persisted manager assignment."""

    def test_assign(self, db, make_user):
        boss = make_user("boss")
        worker = make_user("worker")
        result = assign_manager(db, worker, boss.id)
        assert result.ok
        assert worker.manager_id == boss.id

    def test_rejects_cycle(self, db, make_user):
        a = make_user("a")
        b = make_user("b", manager=a)
        c = make_user("c", manager=b)
        result = assign_manager(db, a, c.id)
        assert result.error == ErrorKind.VALIDATION
        assert result.detail["cycle"] == [a.id, c.id, b.id, a.id]
        assert a.manager_id is None

    def test_rejects_self(self, db, make_user):
        a = make_user("a")
        assert assign_manager(db, a, a.id).error == ErrorKind.VALIDATION

    def test_unknown_manager(self, db, make_user):
        a = make_user("a")
        assert assign_manager(db, a, uuid4()).error == ErrorKind.NOT_FOUND

    def test_cross_tenant_manager(self, db, make_user, other_tenant):
        a = make_user("a")
        foreign = make_user("foreign", tenant_id=other_tenant.id)
        assert assign_manager(db, a, foreign.id).error == ErrorKind.NOT_FOUND

    def test_from_session(self, db, make_user, tenant):
        a = make_user("a")
        b = make_user("b", manager=a)
        resolver = HierarchyResolver.from_session(db, tenant.id)
        assert resolver.is_subordinate(a.id, b.id)
