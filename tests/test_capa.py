"""Tests for CAPA lifecycle operations."""
from uuid import uuid4

import pytest

from qms_core import capa as capa_ops
from qms_core.errors import ErrorKind
from qms_core.events import EventKind
from qms_core.models import CapaStatus


@pytest.fixture
def people(make_user):
    return make_user("raiser", "DeputyDirector"), make_user("verifier", "TopManagingDirector")


@pytest.fixture
def capa(db, tenant, people, clock):
    raiser, _ = people
    return capa_ops.create_capa(db, tenant.id, raiser.id, "Scale drift", "CAPA-001", now=clock.now)


def to_implemented(capa, actor_id):
    capa_ops.start_investigation(capa, actor_id)
    capa_ops.define_actions(capa, actor_id, root_cause_analysis="Worn sensor", corrective_actions="Replace")
    capa_ops.implement_actions(capa, actor_id, notes="Replaced on line 3")


class TestCapaLifecycle:
    """Test the forward chain."""

    def test_create(self, db, capa):
        db.flush()
        assert capa.status == CapaStatus.DRAFT
        assert capa.version == 1

    def test_happy_path(self, capa, people, clock):
        raiser, verifier = people
        to_implemented(capa, raiser.id)
        assert capa.root_cause_analysis == "Worn sensor"
        assert capa.implementation_notes == "Replaced on line 3"

        verified = capa_ops.verify_effectiveness(capa, verifier.id, "Drift gone", True, now=clock.now)
        assert verified.ok
        assert [e.kind for e in verified.events] == [EventKind.CAPA_STATUS_CHANGED, EventKind.CAPA_VERIFIED]
        assert capa.verified_by_id == verifier.id
        assert capa.is_effective

        closed = capa_ops.close(capa, verifier.id, now=clock.now)
        assert closed.ok
        assert capa.status == CapaStatus.CLOSED
        assert capa.actual_completion_date == clock.now
        assert closed.events[-1].kind == EventKind.CAPA_CLOSED

    def test_status_event_payload(self, capa, people):
        raiser, _ = people
        result = capa_ops.start_investigation(capa, raiser.id)
        assert result.events[0].payload == {"from": "draft", "to": "under_investigation"}
        assert result.events[0].entity_id == capa.id

    def test_cannot_skip(self, capa):
        result = capa_ops.implement_actions(capa)
        assert result.error == ErrorKind.VALIDATION
        assert capa.status == CapaStatus.DRAFT
        assert capa.implementation_notes is None

    def test_reimplementing_without_notes_keeps_them(self, capa, people):
        raiser, _ = people
        to_implemented(capa, raiser.id)
        assert capa_ops.roll_back(capa, raiser.id).ok
        assert capa.status == CapaStatus.ACTIONS_DEFINED

        assert capa_ops.implement_actions(capa, raiser.id).ok
        assert capa.implementation_notes == "Replaced on line 3"


class TestVerification:
    """Test effectiveness verification."""

    def test_self_verification_always_fails(self, capa, people):
        """The creator can never verify, whatever the status."""
        raiser, _ = people
        for _ in range(4):
            result = capa_ops.verify_effectiveness(capa, raiser.id, "ok", True)
            assert result.error == ErrorKind.FORBIDDEN
            assert result.detail["reason"] == "self_verification"
            capa_ops.advance(capa, raiser.id)
        assert capa.status == CapaStatus.ACTIONS_IMPLEMENTED
        assert capa_ops.verify_effectiveness(capa, raiser.id, "ok", True).error == ErrorKind.FORBIDDEN
        assert capa.verified_by_id is None

    def test_verify_from_wrong_status(self, capa, people):
        _, verifier = people
        assert capa_ops.verify_effectiveness(capa, verifier.id, "ok", True).error == ErrorKind.VALIDATION

    def test_ineffective_outcome_recorded(self, capa, people):
        raiser, verifier = people
        to_implemented(capa, raiser.id)
        capa_ops.verify_effectiveness(capa, verifier.id, "Drift back after a week", False)
        assert capa.is_effective is False


class TestAdvanceAndRollback:
    """Test generic next/previous moves."""

    def test_advance_refuses_verification_edge(self, capa, people):
        raiser, _ = people
        to_implemented(capa, raiser.id)
        result = capa_ops.advance(capa, raiser.id)
        assert result.detail["reason"] == "verification_required"
        assert capa.status == CapaStatus.ACTIONS_IMPLEMENTED

    def test_advance_closes(self, capa, people):
        raiser, verifier = people
        to_implemented(capa, raiser.id)
        capa_ops.verify_effectiveness(capa, verifier.id, "ok", True)
        assert capa_ops.advance(capa, verifier.id).ok
        assert capa.status == CapaStatus.CLOSED
        assert capa.actual_completion_date is not None

    def test_advance_from_closed(self, capa):
        capa.status = CapaStatus.CLOSED
        assert capa_ops.advance(capa).error == ErrorKind.VALIDATION

    def test_roll_back_one_step(self, capa, people):
        raiser, _ = people
        to_implemented(capa, raiser.id)
        assert capa_ops.roll_back(capa, raiser.id).ok
        assert capa.status == CapaStatus.ACTIONS_DEFINED

    def test_roll_back_clears_verification(self, capa, people):
        raiser, verifier = people
        to_implemented(capa, raiser.id)
        capa_ops.verify_effectiveness(capa, verifier.id, "ok", True)
        capa_ops.roll_back(capa, raiser.id)
        assert capa.status == CapaStatus.ACTIONS_IMPLEMENTED
        assert capa.verified_by_id is None
        assert capa.is_effective is None

    @pytest.mark.parametrize("status", [CapaStatus.DRAFT, CapaStatus.CLOSED])
    def test_no_roll_back(self, capa, status):
        capa.status = status
        assert capa_ops.roll_back(capa, uuid4()).error == ErrorKind.VALIDATION
        assert capa.status == status


class TestDeletion:
    """Test deletability."""

    @pytest.mark.parametrize("status,deletable", [
        (CapaStatus.DRAFT, True),
        (CapaStatus.ACTIONS_IMPLEMENTED, True),
        (CapaStatus.EFFECTIVENESS_VERIFIED, False),
        (CapaStatus.CLOSED, False),
    ])
    def test_can_be_deleted(self, capa, status, deletable):
        capa.status = status
        assert capa_ops.can_be_deleted(capa) == deletable
