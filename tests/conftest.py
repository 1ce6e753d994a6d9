"""Configuraciones comunes de pytest para el servicio de ministración."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pytest
import structlog

# Asegurar que `src/` esté en PYTHONPATH para importar `ministracion.*`
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from ministracion.services import collections  # noqa: E402
from ministracion.services.document_store import (  # noqa: E402
    DocumentStoreError,
    InMemoryDocumentStore,
    WriteOperation,
)


class FlakyDocumentStore(InMemoryDocumentStore):
    """Almacén en memoria que falla de forma controlada."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_updates_for: Set[Tuple[str, str]] = set()
        self.fail_batch_collections: Set[str] = set()
        self.fail_queries_for: Set[str] = set()

    def query(self, collection, filters=None, order_by=None):
        if collection in self.fail_queries_for:
            raise DocumentStoreError(f"consulta rechazada: {collection}")
        return super().query(collection, filters, order_by)

    def update_document(self, collection, document_id, data):
        if (collection, document_id) in self.fail_updates_for:
            raise DocumentStoreError("permiso denegado")
        super().update_document(collection, document_id, data)

    def batch_write(self, operations: Sequence[WriteOperation]) -> None:
        if any(operation.collection in self.fail_batch_collections for operation in operations):
            raise DocumentStoreError("lote rechazado")
        super().batch_write(operations)


class Seeder:
    """Atajos para poblar el almacén en pruebas."""

    def __init__(self, store: InMemoryDocumentStore) -> None:
        self.store = store

    def member(
        self,
        member_id: str,
        first_name: str,
        last_name: str,
        teachers: Optional[Iterable[str]] = None,
    ) -> None:
        self.store.set_document(
            collections.MEMBERS,
            member_id,
            {
                "firstName": first_name,
                "lastName": last_name,
                "status": "active",
                "ministeringTeachers": list(teachers or []),
            },
        )

    def companionship(
        self,
        companionship_id: str,
        companions: List[str],
        families: List[Dict[str, Any]],
    ) -> None:
        normalized = [
            {
                "name": family["name"],
                "memberId": family.get("memberId"),
                "visitedThisMonth": family.get("visitedThisMonth", False),
                "isUrgent": family.get("isUrgent", False),
                "observation": family.get("observation", ""),
            }
            for family in families
        ]
        self.store.set_document(
            collections.COMPANIONSHIPS,
            companionship_id,
            {"companions": companions, "families": normalized},
        )

    def district(self, district_id: str, name: str, companionship_ids: Optional[List[str]] = None) -> None:
        self.store.set_document(
            collections.DISTRICTS,
            district_id,
            {
                "name": name,
                "companionshipIds": list(companionship_ids or []),
                "leaderId": None,
                "leaderName": None,
            },
        )

    def user(self, user_id: str) -> None:
        self.store.set_document(collections.USERS, user_id, {"role": "counselor"})

    def teachers_of(self, member_id: str) -> List[str]:
        document = self.store.get_document(collections.MEMBERS, member_id)
        assert document is not None
        return list(document.data.get("ministeringTeachers", []))

    def companionship_data(self, companionship_id: str) -> Dict[str, Any]:
        document = self.store.get_document(collections.COMPANIONSHIPS, companionship_id)
        assert document is not None
        return document.data


@pytest.fixture(autouse=True)
def reset_structlog():
    """Restablece la configuración de structlog antes de cada prueba."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture()
def store() -> FlakyDocumentStore:
    return FlakyDocumentStore()


@pytest.fixture()
def seed(store: FlakyDocumentStore) -> Seeder:
    return Seeder(store)
