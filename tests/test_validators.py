"""Pruebas del validador de compañerismos."""

from __future__ import annotations

from itertools import permutations

import pytest
from structlog.testing import capture_logs

from ministracion.models import Companionship, Family, FamilyAssignment
from ministracion.services import collections
from ministracion.services.document_store import DocumentStoreError
from ministracion.services.validators import (
    CompanionshipValidator,
    find_duplicates,
    normalize_name,
    validate_companionship_data,
)


@pytest.fixture()
def existing() -> list:
    return [
        Companionship(
            id="c1",
            companions=["Ana", "Luis"],
            families=[Family(name="Familia Pérez", member_id="m1"), Family(name="Familia Soto")],
        ),
        Companionship(id="c2", companions=["Marta", "Rosa"], families=[Family(name="Familia Ruiz", member_id="m3")]),
    ]


def test_normalize_name_ignores_case_and_spaces():
    assert normalize_name("  Familia   Pérez ") == "familia pérez"


def test_find_duplicates_reports_repeated_entries():
    assert find_duplicates(["Ana", "Luis", "ANA"]) == ["ANA"]


def test_valid_proposal_has_no_conflicts(existing):
    result = validate_companionship_data(["Juan", "Pedro"], [FamilyAssignment(name="Familia Díaz")], existing)

    assert result.valid is True
    assert result.error is None
    assert not result.conflicts.has_conflicts


def test_duplicate_companions_in_same_proposal(existing):
    result = validate_companionship_data(["Juan", "juan "], ["Familia Díaz"], existing)

    assert result.valid is False
    assert result.conflicts.duplicate_companions == ["juan "]
    assert "Compañeros duplicados" in result.error


def test_duplicate_families_in_same_proposal(existing):
    result = validate_companionship_data(["Juan", "Pedro"], ["Familia Díaz", "familia díaz"], existing)

    assert result.valid is False
    assert result.conflicts.duplicate_families == ["familia díaz"]


def test_overlap_between_companion_and_family_returns_early(existing):
    result = validate_companionship_data(["Ana", "Pedro"], ["ana"], existing)

    assert result.valid is False
    assert result.conflicts.overlapping == ["ana"]
    assert result.error.startswith("Los siguientes están asignados como compañeros y también como familias")
    assert result.conflicts.companion_already_assigned == []


def test_companion_already_assigned_elsewhere(existing):
    result = validate_companionship_data(["Ana", "Pedro"], ["Familia Díaz"], existing)

    assert result.valid is False
    assert [(c.companion, c.companionship) for c in result.conflicts.companion_already_assigned] == [("Ana", "c1")]
    assert "• Compañeros ya asignados:\n  - Ana (en otro compañerismo)" in result.error


def test_family_already_assigned_by_name(existing):
    result = validate_companionship_data(["Juan", "Pedro"], ["familia soto"], existing)

    assert result.valid is False
    assert result.conflicts.family_already_assigned[0].companionship == "c1"
    assert "Familias ya asignadas" in result.error


def test_family_already_assigned_by_member_id(existing):
    result = validate_companionship_data(
        ["Juan", "Pedro"],
        [FamilyAssignment(name="Familia Ruiz Gómez", member_id="m3")],
        existing,
    )

    assert result.valid is False
    assert result.conflicts.family_already_assigned[0].companionship == "c2"


def test_edit_excludes_own_companionship(existing):
    result = validate_companionship_data(
        ["Ana", "Luis"],
        [FamilyAssignment(name="Familia Pérez", member_id="m1"), "Familia Soto"],
        existing,
        exclude_companionship_id="c1",
    )

    assert result.valid is True


def test_same_display_name_for_different_members_conflicts(existing):
    result = validate_companionship_data(
        ["Juan", "Pedro"],
        [FamilyAssignment(name="Familia Pérez", member_id="m9")],
        existing,
    )

    assert result.valid is False


def test_rejection_does_not_depend_on_entry_order(existing):
    companions = ["Juan", "Luis", "Pedro"]
    families = ["Familia Díaz", "Familia Ruiz", "Familia Vega"]

    outcomes = {
        validate_companionship_data(list(c), list(f), existing).valid
        for c in permutations(companions)
        for f in permutations(families)
    }

    assert outcomes == {False}


def test_validator_loads_companionships_from_store(store, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez", "memberId": "m1"}])
    validator = CompanionshipValidator(store)

    result = validator.validate(["Ana", "Pedro"], ["Familia Díaz"])

    assert result.valid is False
    assert result.conflicts.companion_already_assigned[0].companionship == "c1"


def test_validator_propagates_store_failures(store):
    store.fail_queries_for.add(collections.COMPANIONSHIPS)
    validator = CompanionshipValidator(store)

    with pytest.raises(DocumentStoreError):
        validator.validate(["Ana", "Pedro"], ["Familia Díaz"])


def test_validator_logs_conflicts(store, seed):
    seed.companionship("c1", ["Ana", "Luis"], [{"name": "Familia Pérez"}])

    with capture_logs() as logs:
        CompanionshipValidator(store).validate(["Ana", "Pedro"], ["Familia Díaz"], log_context={"request_id": "r-1"})

    event = logs[-1]
    assert event["error_code"] == "validation_conflict"
    assert event["request_id"] == "r-1"
    assert event["companeros_asignados"] == ["Ana"]
