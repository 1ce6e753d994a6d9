"""Pruebas de la gestión de distritos."""

from __future__ import annotations

import types

import pytest

from ministracion.services import collections
from ministracion.services.district_service import DistrictService
from ministracion.services.errors import DistrictNotFoundError, MemberNotFoundError


def _ids(store, district_id):
    return store.get_document(collections.DISTRICTS, district_id).data["companionshipIds"]


def test_ensure_districts_bootstraps_three_empty_districts(store):
    service = DistrictService(store)

    districts = service.ensure_districts()

    assert [district.name for district in districts] == ["Distrito 1", "Distrito 2", "Distrito 3"]
    assert all(district.companionship_ids == [] for district in districts)
    assert all(district.leader_id is None and district.leader_name is None for district in districts)


def test_ensure_districts_repairs_drifted_names(store, seed):
    seed.district("d-sur", "Sur", ["c2"])
    seed.district("d-norte", "Norte", ["c1"])
    service = DistrictService(store)

    districts = service.ensure_districts()

    names = {district.id: district.name for district in districts}
    assert names == {"d-norte": "Distrito 1", "d-sur": "Distrito 2"}
    assert _ids(store, "d-norte") == ["c1"]
    assert _ids(store, "d-sur") == ["c2"]


def test_ensure_districts_skips_write_when_names_are_canonical(store, seed, monkeypatch):
    seed.district("d1", "Distrito 1")
    seed.district("d2", "Distrito 2")
    service = DistrictService(store)

    def _fail(operations):
        raise AssertionError("no debería escribir")

    monkeypatch.setattr(store, "batch_write", _fail)

    assert [district.id for district in service.ensure_districts()] == ["d1", "d2"]


def test_from_settings_uses_template_and_count(store):
    settings = types.SimpleNamespace(default_district_count=2, district_name_template="District {number}")

    districts = DistrictService.from_settings(store, settings).ensure_districts()

    assert [district.name for district in districts] == ["District 1", "District 2"]


def test_assign_companionship_toggles_membership(store, seed):
    seed.district("d1", "Distrito 1")
    service = DistrictService(store)

    added = service.assign_companionship_to_district("d1", "c1")
    removed = service.assign_companionship_to_district("d1", "c1")

    assert added.companionship_ids == ["c1"]
    assert removed.companionship_ids == []


def test_assign_to_unknown_district_raises(store):
    with pytest.raises(DistrictNotFoundError):
        DistrictService(store).assign_companionship_to_district("d404", "c1")


def test_move_keeps_companionship_in_a_single_district(store, seed):
    seed.district("d-a", "Distrito 1", ["c1", "c2"])
    seed.district("d-b", "Distrito 2", ["c3"])
    service = DistrictService(store)

    updated = service.move_companionship_to_district("c1", "d-b")

    assert set(updated) == {"d-a", "d-b"}
    assert _ids(store, "d-a") == ["c2"]
    assert _ids(store, "d-b") == ["c3", "c1"]
    assert service.district_for_companionship("c1").id == "d-b"


def test_move_to_current_district_is_noop(store, seed):
    seed.district("d-a", "Distrito 1", ["c1"])

    assert DistrictService(store).move_companionship_to_district("c1", "d-a") == []


def test_move_to_none_removes_from_every_district(store, seed):
    seed.district("d-a", "Distrito 1", ["c1"])
    seed.district("d-b", "Distrito 2", ["c1", "c2"])
    service = DistrictService(store)

    service.remove_companionship_from_districts("c1")

    assert _ids(store, "d-a") == []
    assert _ids(store, "d-b") == ["c2"]
    assert service.district_for_companionship("c1") is None


def test_move_to_unknown_district_raises(store, seed):
    seed.district("d-a", "Distrito 1", ["c1"])

    with pytest.raises(DistrictNotFoundError):
        DistrictService(store).move_companionship_to_district("c1", "d404")

    assert _ids(store, "d-a") == ["c1"]


def test_assign_leader_denormalizes_full_name(store, seed):
    seed.district("d1", "Distrito 1")
    seed.member("m1", "Juan", "Pérez")
    service = DistrictService(store)

    district = service.assign_leader_to_district("d1", "m1")

    assert district.leader_id == "m1"
    assert district.leader_name == "Juan Pérez"


def test_clear_leader(store, seed):
    seed.district("d1", "Distrito 1")
    seed.member("m1", "Juan", "Pérez")
    service = DistrictService(store)
    service.assign_leader_to_district("d1", "m1")

    district = service.assign_leader_to_district("d1", None)

    assert district.leader_id is None
    assert district.leader_name is None


def test_assign_unknown_leader_raises(store, seed):
    seed.district("d1", "Distrito 1")

    with pytest.raises(MemberNotFoundError):
        DistrictService(store).assign_leader_to_district("d1", "m404")


def test_ensure_districts_is_stable_with_ten_or_more(store):
    service = DistrictService(store, district_count=12)

    first = {district.id: district.name for district in service.ensure_districts()}
    second = service.ensure_districts()

    assert {district.id: district.name for district in second} == first
    assert [district.name for district in second][8:11] == ["Distrito 9", "Distrito 10", "Distrito 11"]
