"""Pruebas de la orquestación de compañerismos."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from ministracion.models import CompanionshipDraft, FamilyAssignment, RolloverState
from ministracion.services import collections
from ministracion.services.companionship_service import CompanionshipService
from ministracion.services.errors import CompanionshipNotFoundError, DistrictNotFoundError, FamilyNotFoundError
from ministracion.services.notifications import DocumentStoreNotificationDispatcher
from ministracion.services.rollover_service import RolloverService

NOW = datetime(2024, 3, 5, tzinfo=timezone.utc)


def _draft(companions, families, district_id=None):
    return CompanionshipDraft(
        companions=companions,
        families=[
            family if isinstance(family, FamilyAssignment) else FamilyAssignment(name=family)
            for family in families
        ],
        district_id=district_id,
    )


@pytest.fixture()
def service(store):
    return CompanionshipService(store, rollover=RolloverService(store, clock=lambda: NOW))


def test_draft_requires_two_companions_and_one_family():
    with pytest.raises(ValueError):
        CompanionshipDraft(companions=["Ana"], families=[FamilyAssignment(name="Familia Pérez")])
    with pytest.raises(ValueError):
        CompanionshipDraft(companions=["Ana", "Luis"], families=[])
    with pytest.raises(ValueError):
        CompanionshipDraft(companions=["Ana", "  "], families=[FamilyAssignment(name="Familia Pérez")])


def test_create_companionship_writes_and_syncs_members(service, store, seed):
    seed.member("m1", "Juan", "Pérez", ["Marta"])
    seed.district("d1", "Distrito 1")

    result = service.create_companionship(
        _draft(["Ana", "Luis"], [FamilyAssignment(name="Familia Pérez", member_id="m1")], district_id="d1")
    )

    assert result.saved is True
    assert result.warnings == []
    companionship_id = result.companionship.id
    stored = seed.companionship_data(companionship_id)
    assert stored["companions"] == ["Ana", "Luis"]
    assert stored["families"] == [
        {"name": "Familia Pérez", "memberId": "m1", "visitedThisMonth": False, "isUrgent": False, "observation": ""}
    ]
    assert seed.teachers_of("m1") == ["Marta", "Ana", "Luis"]
    assert store.get_document(collections.DISTRICTS, "d1").data["companionshipIds"] == [companionship_id]


def test_create_with_conflict_writes_nothing(service, store, seed):
    seed.member("m1", "Juan", "Pérez")
    seed.companionship("c1", ["Ana", "Rosa"], [{"name": "Familia Soto"}])

    result = service.create_companionship(
        _draft(["Ana", "Luis"], [FamilyAssignment(name="Familia Pérez", member_id="m1")])
    )

    assert result.saved is False
    assert result.validation.valid is False
    assert result.validation.conflicts.companion_already_assigned[0].companionship == "c1"
    assert len(store.query(collections.COMPANIONSHIPS)) == 1
    assert seed.teachers_of("m1") == []


def test_create_with_unknown_district_raises_before_writing(service, store):
    with pytest.raises(DistrictNotFoundError):
        service.create_companionship(_draft(["Ana", "Luis"], ["Familia Pérez"], district_id="d404"))

    assert store.query(collections.COMPANIONSHIPS) == []


def test_member_sync_failure_is_reported_as_warning(service, store, seed):
    seed.member("m1", "Juan", "Pérez")
    store.fail_updates_for.add((collections.MEMBERS, "m1"))

    result = service.create_companionship(
        _draft(["Ana", "Luis"], [FamilyAssignment(name="Familia Pérez", member_id="m1")])
    )

    assert result.saved is True
    assert result.sync.success is False
    assert len(result.warnings) == 1
    assert store.get_document(collections.COMPANIONSHIPS, result.companionship.id) is not None


def test_update_keeps_family_state_and_resyncs(service, seed):
    seed.member("m1", "Juan", "Pérez", ["Ana", "Luis"])
    seed.member("m2", "Lucía", "Soto", ["Ana", "Luis"])
    seed.member("m3", "Carlos", "Ruiz")
    seed.companionship(
        "c1",
        ["Ana", "Luis"],
        [
            {"name": "Familia Pérez", "memberId": "m1", "visitedThisMonth": True, "isUrgent": True, "observation": "Salud"},
            {"name": "Familia Soto", "memberId": "m2", "visitedThisMonth": True},
        ],
    )

    result = service.update_companionship(
        "c1",
        _draft(
            ["Ana", "Pedro"],
            [
                FamilyAssignment(name="Familia Pérez", member_id="m1"),
                FamilyAssignment(name="Familia Ruiz", member_id="m3"),
            ],
        ),
    )

    assert result.saved is True
    families = seed.companionship_data("c1")["families"]
    assert families[0]["visitedThisMonth"] is True
    assert families[0]["isUrgent"] is True
    assert families[0]["observation"] == "Salud"
    assert families[1] == {
        "name": "Familia Ruiz",
        "memberId": "m3",
        "visitedThisMonth": False,
        "isUrgent": False,
        "observation": "",
    }
    assert seed.teachers_of("m1") == ["Ana", "Pedro"]
    assert seed.teachers_of("m2") == []
    assert seed.teachers_of("m3") == ["Ana", "Pedro"]


def test_update_with_conflict_leaves_document_untouched(service, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez"}])
    seed.companionship("c2", ["Marta", "Rosa"], [{"name": "Familia Soto"}])

    result = service.update_companionship("c1", _draft(["Ana", "Luis"], ["Familia Pérez", "Familia Soto"]))

    assert result.saved is False
    assert [family["name"] for family in seed.companionship_data("c1")["families"]] == ["Familia Pérez"]


def test_update_missing_companionship_raises(service):
    with pytest.raises(CompanionshipNotFoundError):
        service.update_companionship("c404", _draft(["Ana", "Luis"], ["Familia Pérez"]))


def test_delete_cascades_teacher_removal_and_district_cleanup(service, store, seed):
    seed.member("m1", "Juan", "Pérez", ["Ana", "Luis", "Marta"])
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez", "memberId": "m1"}])
    seed.district("d1", "Distrito 1", ["c1", "c2"])

    result = service.delete_companionship("c1")

    assert result.sync.updated_count == 1
    assert result.districts_updated == ["d1"]
    assert seed.teachers_of("m1") == ["Marta"]
    assert store.get_document(collections.COMPANIONSHIPS, "c1") is None
    assert store.get_document(collections.DISTRICTS, "d1").data["companionshipIds"] == ["c2"]


def test_delete_missing_companionship_raises(service):
    with pytest.raises(CompanionshipNotFoundError):
        service.delete_companionship("c404")


def test_set_family_visited(service, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez"}, {"name": "Familia Soto"}])

    companionship = service.set_family_visited("c1", "Familia Soto", True)

    assert [family.visited_this_month for family in companionship.families] == [False, True]
    assert seed.companionship_data("c1")["families"][1]["visitedThisMonth"] is True


def test_set_visited_on_unknown_family_raises(service, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez"}])

    with pytest.raises(FamilyNotFoundError):
        service.set_family_visited("c1", "Familia Soto", True)


def test_mark_urgent_notifies_every_user(store, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez"}])
    seed.user("u1")
    seed.user("u2")
    service = CompanionshipService(store, notifier=DocumentStoreNotificationDispatcher(store))

    companionship, warnings = service.mark_family_urgent("c1", "Familia Pérez", "Necesitan transporte")

    assert warnings == []
    assert companionship.families[0].is_urgent is True
    notifications = store.query(collections.NOTIFICATIONS)
    assert {document.data["userId"] for document in notifications} == {"u1", "u2"}
    payload = notifications[0].data
    assert payload["title"] == "Necesidad Urgente de Familia"
    assert payload["body"] == "La familia Familia Pérez tiene una necesidad urgente: Necesitan transporte"
    assert payload["contextType"] == "urgent_family"
    assert payload["actionUrl"] == "/ministering/urgent"
    assert payload["isRead"] is False


def test_notification_failure_keeps_urgent_flag(store, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez"}])
    notifier = MagicMock()
    notifier.notify_all.side_effect = RuntimeError("sin conexión")
    service = CompanionshipService(store, notifier=notifier)

    with capture_logs() as logs:
        _, warnings = service.mark_family_urgent("c1", "Familia Pérez", "Hospital")

    assert len(warnings) == 1
    assert seed.companionship_data("c1")["families"][0]["isUrgent"] is True
    assert any(event.get("error_code") == "notification_failed" for event in logs)


def test_resolve_urgency_clears_flag_and_observation(service, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez", "isUrgent": True, "observation": "Hospital"}])

    companionship = service.resolve_family_urgency("c1", "Familia Pérez")

    assert companionship.families[0].is_urgent is False
    assert companionship.families[0].observation == ""


def test_list_urgent_families(service, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez", "isUrgent": True, "observation": "Hospital"}])
    seed.companionship("c2", ["Marta", "Rosa"], [{"name": "Familia Soto"}])

    urgent = service.list_urgent_families()

    assert [(item.companionship_id, item.family.name) for item in urgent] == [("c1", "Familia Pérez")]
    assert urgent[0].companions == ["Ana", "Luis"]


def test_stats_include_delta_against_previous_month(service, store, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez", "visitedThisMonth": True}, {"name": "Familia Soto"}])
    seed.companionship("c2", ["Marta", "Rosa"], [{"name": "Familia Ruiz", "visitedThisMonth": True, "isUrgent": True}])
    store.set_document(collections.HISTORY, "2024-02", {"percentage": 50, "year": "2024", "month": "02"})

    stats = service.get_stats()

    assert stats.total_companionships == 2
    assert stats.total_families == 3
    assert stats.visited_families == 2
    assert stats.completion == 67
    assert stats.up_to_date_companionships == 1
    assert stats.urgent_families == 1
    assert stats.previous_percentage == 50
    assert stats.delta_vs_previous == 17


def test_visit_then_rollover_scenario(service, seed):
    """Marcar visita, revisar avance y reiniciar con el snapshot previo a la marca."""
    seed.companionship("c1", ["A", "B"], [{"name": "Familia X", "memberId": "m1", "visitedThisMonth": False}])
    snapshot = service.list_companionships()

    service.set_family_visited("c1", "Familia X", True)
    assert service.get_stats().completion == 100

    result = service.rollover.run_rollover(snapshot, state=RolloverState(), now=NOW)

    assert result.history.id == "2024-02"
    assert result.history.percentage == 0
    assert seed.companionship_data("c1")["families"][0]["visitedThisMonth"] is False


def test_rollover_keeps_changes_made_after_snapshot(service, seed):
    seed.companionship("c1", ["A", "B"], [{"name": "Familia X", "visitedThisMonth": True}])
    snapshot = service.list_companionships()

    service.mark_family_urgent("c1", "Familia X", "Hospital")
    seed.store.update_document(
        collections.COMPANIONSHIPS,
        "c1",
        {"families": seed.companionship_data("c1")["families"] + [{"name": "Familia Y", "visitedThisMonth": True}]},
    )

    result = service.rollover.run_rollover(snapshot, state=RolloverState(), now=NOW)

    assert result.history.percentage == 100
    families = seed.companionship_data("c1")["families"]
    assert [family["name"] for family in families] == ["Familia X", "Familia Y"]
    assert families[0]["isUrgent"] is True
    assert families[0]["observation"] == "Hospital"
    assert all(family["visitedThisMonth"] is False for family in families)
