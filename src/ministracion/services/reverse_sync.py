"""Sincronización inversa: de compañerismos a ``ministeringTeachers`` de miembros.

Cada actualización de miembro es una escritura dirigida e independiente. Un
fallo individual se registra como advertencia y se acumula en
``SyncResult``; nunca revierte la escritura del compañerismo que la originó.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from ministracion.logging_utils import bind_log_context, ensure_log_context
from ministracion.models import FamilyAssignment, Member, SyncResult
from ministracion.services import collections
from ministracion.services.document_store import DocumentStore, DocumentStoreError
from ministracion.services.validators import FamilyInput, as_family_assignment, normalize_name

DEFAULT_FAMILY_PREFIXES: Tuple[str, ...] = ("Familia ", "Family ")


def calculate_updated_teachers(
    current_teachers: Sequence[str],
    teachers_to_remove: Iterable[str],
    teachers_to_add: Iterable[str],
) -> List[str]:
    """Quita ``teachers_to_remove`` y agrega ``teachers_to_add`` sin duplicados.

    Conserva el orden existente; los nuevos se agregan al final.
    """

    to_remove = set(teachers_to_remove)
    updated: List[str] = []
    for teacher in [t for t in current_teachers if t not in to_remove] + list(teachers_to_add):
        if teacher not in updated:
            updated.append(teacher)
    return updated


def same_teachers(first: Sequence[str], second: Sequence[str]) -> bool:
    return sorted(first) == sorted(second)


def extract_last_name(family_name: str, prefixes: Sequence[str] = DEFAULT_FAMILY_PREFIXES) -> str:
    for prefix in prefixes:
        if family_name.startswith(prefix):
            return family_name[len(prefix):].strip()
    return family_name.strip()


def _family_key(assignment: FamilyAssignment) -> str:
    return f"id:{assignment.member_id}" if assignment.member_id else f"name:{normalize_name(assignment.name)}"


class ReverseSyncEngine:
    """Mantiene ``Member.ministeringTeachers`` alineado con los compañerismos."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        family_name_prefixes: Optional[Sequence[str]] = None,
    ) -> None:
        self.store = store
        self.family_name_prefixes = tuple(family_name_prefixes or DEFAULT_FAMILY_PREFIXES)
        self.logger = structlog.get_logger("reverse_sync").bind(servicio="reverse_sync")

    # ------------------------------------------------------------------
    # Resolución de miembros
    # ------------------------------------------------------------------
    def resolve_members(self, family: FamilyInput) -> List[Member]:
        """Miembros a los que apunta una familia.

        Con ``memberId`` se lee el documento directamente. Sin él se usa la
        compatibilidad heredada: se quita el prefijo ("Familia ", "Family ")
        y se buscan miembros por ``lastName`` exacto.
        """

        assignment = as_family_assignment(family)
        if assignment.member_id:
            document = self.store.get_document(collections.MEMBERS, assignment.member_id)
            if document is None:
                return []
            return [Member.from_document(document.id, document.data)]

        last_name = extract_last_name(assignment.name, self.family_name_prefixes)
        if not last_name:
            return []
        documents = self.store.query(collections.MEMBERS, [("lastName", "==", last_name)])
        return [Member.from_document(document.id, document.data) for document in documents]

    # ------------------------------------------------------------------
    # Operaciones públicas
    # ------------------------------------------------------------------
    def add_teachers_to_families(
        self,
        companion_names: Sequence[str],
        families: Sequence[FamilyInput],
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        """Alta de compañerismo: une los compañeros a cada familia resoluble."""

        plans = [(as_family_assignment(family), [], list(companion_names)) for family in families]
        return self._execute(plans, etapa="sync_alta_companerismo", log_context=log_context)

    def update_teachers_on_companionship_change(
        self,
        old_companions: Sequence[str],
        new_companions: Sequence[str],
        old_families: Sequence[FamilyInput],
        new_families: Sequence[FamilyInput],
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        """Edición de compañerismo.

        Familias removidas pierden los compañeros anteriores. Familias que se
        conservan o se agregan pierden los compañeros que salieron y reciben
        los nuevos. Aplicarlo dos veces deja el mismo estado que una vez.
        """

        old_assignments = [as_family_assignment(family) for family in old_families]
        new_assignments = [as_family_assignment(family) for family in new_families]
        new_keys = {_family_key(assignment) for assignment in new_assignments}

        departed = [companion for companion in old_companions if companion not in new_companions]

        plans: List[Tuple[FamilyAssignment, List[str], List[str]]] = [
            (assignment, list(old_companions), [])
            for assignment in old_assignments
            if _family_key(assignment) not in new_keys
        ]
        plans.extend((assignment, departed, list(new_companions)) for assignment in new_assignments)

        return self._execute(plans, etapa="sync_edicion_companerismo", log_context=log_context)

    def remove_teachers_from_families(
        self,
        companion_names: Sequence[str],
        families: Sequence[FamilyInput],
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        """Baja de compañerismo: quita sus compañeros de cada familia asignada."""

        if not companion_names or not families:
            return SyncResult()
        plans = [(as_family_assignment(family), list(companion_names), []) for family in families]
        return self._execute(plans, etapa="sync_baja_companerismo", log_context=log_context)

    # ------------------------------------------------------------------
    # Ejecución
    # ------------------------------------------------------------------
    def _execute(
        self,
        plans: Sequence[Tuple[FamilyAssignment, List[str], List[str]]],
        *,
        etapa: str,
        log_context: Optional[Dict[str, Any]],
    ) -> SyncResult:
        context = ensure_log_context(log_context, etapa=etapa)
        log = bind_log_context(self.logger, context)
        result = SyncResult()
        skipped = 0
        # Un miembro puede resolverse desde varias familias; se trabaja sobre su último estado
        current_state: Dict[str, List[str]] = {}

        for assignment, to_remove, to_add in plans:
            try:
                members = self.resolve_members(assignment)
            except DocumentStoreError as exc:
                log.warning(
                    "⚠️ No se pudo resolver la familia",
                    familia=assignment.name,
                    member_id=assignment.member_id,
                    error=str(exc),
                    error_code="member_lookup_failed",
                )
                result.record_failure(assignment.member_id or "", assignment.name, str(exc))
                continue

            if not members:
                skipped += 1
                log.debug("familia_sin_miembro", familia=assignment.name, member_id=assignment.member_id)
                continue

            for member in members:
                before = current_state.get(member.id, member.ministering_teachers)
                after = calculate_updated_teachers(before, to_remove, to_add)
                if same_teachers(before, after):
                    continue

                try:
                    self.store.update_document(collections.MEMBERS, member.id, {"ministeringTeachers": after})
                except DocumentStoreError as exc:
                    log.warning(
                        "⚠️ Falló la actualización de maestros ministrantes",
                        member_id=member.id,
                        miembro=member.full_name,
                        antes=before,
                        despues=after,
                        error=str(exc),
                        error_code="member_update_failed",
                    )
                    result.record_failure(member.id, member.full_name, str(exc))
                    continue

                current_state[member.id] = after
                result.updated_count += 1
                log.debug("maestros_actualizados", member_id=member.id, antes=before, despues=after)

        log.info(
            "🔄 Sincronización inversa finalizada",
            records_processed=result.updated_count,
            records_skipped=skipped,
            fallidos=len(result.failed_members),
        )
        return result


__all__ = [
    "DEFAULT_FAMILY_PREFIXES",
    "ReverseSyncEngine",
    "calculate_updated_teachers",
    "extract_last_name",
    "same_teachers",
]
