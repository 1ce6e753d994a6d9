"""Gestión de distritos de ministración."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ministracion.logging_utils import bind_log_context, ensure_log_context
from ministracion.models import Member, MinisteringDistrict
from ministracion.services import collections
from ministracion.services.document_store import DocumentStore, WriteOperation
from ministracion.services.errors import DistrictNotFoundError, MemberNotFoundError


class DistrictService:
    """Membresía de compañerismos en distritos y líderes de distrito.

    Un compañerismo debe pertenecer como máximo a un distrito. ``assign``
    sólo alterna la membresía; ``move`` garantiza la exclusividad.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        district_count: int = 3,
        name_template: str = "Distrito {number}",
    ) -> None:
        self.store = store
        self.district_count = district_count
        self.name_template = name_template
        self._name_pattern = re.compile(re.escape(name_template).replace(re.escape("{number}"), r"(\d+)"))
        self.logger = structlog.get_logger("ministering").bind(servicio="districts")

    @classmethod
    def from_settings(cls, store: DocumentStore, settings: Any) -> "DistrictService":
        return cls(
            store,
            district_count=settings.default_district_count,
            name_template=settings.district_name_template,
        )

    def district_name(self, number: int) -> str:
        return self.name_template.replace("{number}", str(number))

    def _sort_key(self, district: MinisteringDistrict) -> Tuple[int, int, str]:
        # "Distrito 10" va después de "Distrito 9"; los nombres libres al final
        match = self._name_pattern.fullmatch(district.name)
        if match:
            return 0, int(match.group(1)), district.name
        return 1, 0, district.name

    def list_districts(self) -> List[MinisteringDistrict]:
        documents = self.store.query(collections.DISTRICTS)
        districts = [MinisteringDistrict.from_document(document.id, document.data) for document in documents]
        return sorted(districts, key=self._sort_key)

    def get_district(self, district_id: str) -> MinisteringDistrict:
        document = self.store.get_document(collections.DISTRICTS, district_id)
        if document is None:
            raise DistrictNotFoundError(district_id)
        return MinisteringDistrict.from_document(document.id, document.data)

    def ensure_districts(self, *, log_context: Optional[Dict[str, Any]] = None) -> List[MinisteringDistrict]:
        """Crea los distritos por defecto o repara sus nombres canónicos.

        Se ejecuta en cada carga: si no hay distritos se crean
        ``district_count`` vacíos; si existen, se ordenan por su número y se
        renombran en un solo lote cuando no siguen la plantilla.
        """

        log = bind_log_context(self.logger, ensure_log_context(log_context, etapa="distritos_bootstrap"))
        districts = self.list_districts()

        if not districts:
            operations = []
            for number in range(1, self.district_count + 1):
                district_id = self.store.new_document_id(collections.DISTRICTS)
                operations.append(
                    WriteOperation.set(
                        collections.DISTRICTS,
                        district_id,
                        {
                            "name": self.district_name(number),
                            "companionshipIds": [],
                            "leaderId": None,
                            "leaderName": None,
                            "updatedAt": self.store.server_timestamp(),
                        },
                    )
                )
            self.store.batch_write(operations)
            log.info("🗂️ Distritos creados por defecto", records_processed=len(operations))
            return self.list_districts()

        operations = [
            WriteOperation.set(
                collections.DISTRICTS,
                district.id,
                {"name": self.district_name(index), "updatedAt": self.store.server_timestamp()},
                merge=True,
            )
            for index, district in enumerate(districts, start=1)
            if district.name != self.district_name(index)
        ]
        if not operations:
            return districts

        self.store.batch_write(operations)
        log.info(
            "🗂️ Nombres de distritos normalizados",
            records_processed=len(operations),
            records_skipped=len(districts) - len(operations),
        )
        return self.list_districts()

    def assign_companionship_to_district(
        self,
        district_id: str,
        companionship_id: str,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> MinisteringDistrict:
        """Alterna la membresía: quita el compañerismo si está, lo agrega si no."""

        district = self.get_district(district_id)
        log = bind_log_context(
            self.logger,
            ensure_log_context(
                log_context,
                etapa="distrito_alternar",
                district_id=district_id,
                companionship_id=companionship_id,
            ),
        )

        if companionship_id in district.companionship_ids:
            companionship_ids = [cid for cid in district.companionship_ids if cid != companionship_id]
            accion = "removido"
        else:
            companionship_ids = district.companionship_ids + [companionship_id]
            accion = "agregado"

        self.store.set_document(
            collections.DISTRICTS,
            district_id,
            {"companionshipIds": companionship_ids, "updatedAt": self.store.server_timestamp()},
            merge=True,
        )
        log.info("distrito_membresia_actualizada", accion=accion)
        return self.get_district(district_id)

    def move_companionship_to_district(
        self,
        companionship_id: str,
        district_id: Optional[str],
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """Deja el compañerismo sólo en ``district_id`` (o en ninguno si es ``None``).

        Devuelve los IDs de distritos modificados.
        """

        if district_id is not None:
            self.get_district(district_id)

        operations = []
        for district in self.list_districts():
            contains = companionship_id in district.companionship_ids
            if district.id == district_id and not contains:
                companionship_ids = district.companionship_ids + [companionship_id]
            elif district.id != district_id and contains:
                companionship_ids = [cid for cid in district.companionship_ids if cid != companionship_id]
            else:
                continue
            operations.append(
                WriteOperation.set(
                    collections.DISTRICTS,
                    district.id,
                    {"companionshipIds": companionship_ids, "updatedAt": self.store.server_timestamp()},
                    merge=True,
                )
            )

        if operations:
            self.store.batch_write(operations)

        updated = [operation.document_id for operation in operations]
        bind_log_context(
            self.logger,
            ensure_log_context(
                log_context,
                etapa="distrito_mover",
                district_id=district_id,
                companionship_id=companionship_id,
            ),
        ).info("distrito_companerismo_movido", distritos_actualizados=updated)
        return updated

    def remove_companionship_from_districts(
        self,
        companionship_id: str,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        return self.move_companionship_to_district(companionship_id, None, log_context=log_context)

    def district_for_companionship(self, companionship_id: str) -> Optional[MinisteringDistrict]:
        documents = self.store.query(
            collections.DISTRICTS,
            [("companionshipIds", "array_contains", companionship_id)],
        )
        if not documents:
            return None
        return MinisteringDistrict.from_document(documents[0].id, documents[0].data)

    def assign_leader_to_district(
        self,
        district_id: str,
        leader_id: Optional[str],
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> MinisteringDistrict:
        """Asigna (o quita, con ``None``) el líder del distrito.

        El nombre completo se copia en ``leaderName`` al escribir; no se
        vuelve a sincronizar si el miembro cambia de nombre después.
        """

        self.get_district(district_id)
        leader_name = None
        if leader_id:
            document = self.store.get_document(collections.MEMBERS, leader_id)
            if document is None:
                raise MemberNotFoundError(leader_id)
            leader_name = Member.from_document(document.id, document.data).full_name

        self.store.set_document(
            collections.DISTRICTS,
            district_id,
            {
                "leaderId": leader_id or None,
                "leaderName": leader_name,
                "updatedAt": self.store.server_timestamp(),
            },
            merge=True,
        )
        bind_log_context(
            self.logger,
            ensure_log_context(log_context, etapa="distrito_lider", district_id=district_id, member_id=leader_id),
        ).info("distrito_lider_asignado", lider=leader_name)
        return self.get_district(district_id)


__all__ = ["DistrictService"]
