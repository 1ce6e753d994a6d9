"""Validación de compañerismos antes de guardarlos.

Los conflictos esperados (compañeros o familias duplicadas, asignaciones que
ya existen en otro compañerismo) se devuelven como ``ValidationResult`` y
nunca se lanzan. Sólo los fallos del almacén documental se propagan.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional, Sequence, Union

import structlog

from ministracion.logging_utils import bind_log_context, ensure_log_context
from ministracion.models import (
    CompanionAssignmentConflict,
    Companionship,
    Family,
    FamilyAssignment,
    FamilyAssignmentConflict,
    ValidationConflicts,
    ValidationResult,
)
from ministracion.services import collections
from ministracion.services.document_store import DocumentStore

FamilyInput = Union[FamilyAssignment, Family, dict, str]

_WHITESPACE = re.compile(r"\s+")


def normalize_name(value: str) -> str:
    """Compara nombres visibles sin distinguir mayúsculas ni espacios extremos."""
    return _WHITESPACE.sub(" ", (value or "").strip()).lower()


def as_family_assignment(value: FamilyInput) -> FamilyAssignment:
    if isinstance(value, FamilyAssignment):
        return value
    if isinstance(value, Family):
        return FamilyAssignment(name=value.name, member_id=value.member_id)
    if isinstance(value, str):
        return FamilyAssignment(name=value)
    return FamilyAssignment.model_validate(value)


def find_duplicates(names: Iterable[str]) -> List[str]:
    seen = set()
    duplicates: List[str] = []
    for name in names:
        normalized = normalize_name(name)
        if normalized in seen:
            duplicates.append(name)
        seen.add(normalized)
    return duplicates


def find_overlap(companions: Iterable[str], family_names: Iterable[str]) -> List[str]:
    normalized_companions = {normalize_name(companion) for companion in companions}
    return [name for name in family_names if normalize_name(name) in normalized_companions]


def _same_family(proposed: FamilyAssignment, existing: Family) -> bool:
    if normalize_name(proposed.name) == normalize_name(existing.name):
        return True
    return bool(proposed.member_id and existing.member_id and proposed.member_id == existing.member_id)


def build_error_message(conflicts: ValidationConflicts) -> str:
    message = "Se encontraron los siguientes conflictos:\n\n"
    if conflicts.duplicate_companions:
        message += f"• Compañeros duplicados: {', '.join(conflicts.duplicate_companions)}\n"
    if conflicts.duplicate_families:
        message += f"• Familias duplicadas: {', '.join(conflicts.duplicate_families)}\n"
    if conflicts.companion_already_assigned:
        lines = "\n".join(f"  - {item.companion} (en otro compañerismo)" for item in conflicts.companion_already_assigned)
        message += f"• Compañeros ya asignados:\n{lines}\n"
    if conflicts.family_already_assigned:
        lines = "\n".join(f"  - {item.family} (en otro compañerismo)" for item in conflicts.family_already_assigned)
        message += f"• Familias ya asignadas:\n{lines}"
    return message.rstrip("\n")


def validate_companionship_data(
    companion_names: Sequence[str],
    families: Sequence[FamilyInput],
    companionships: Iterable[Companionship],
    exclude_companionship_id: Optional[str] = None,
) -> ValidationResult:
    """Valida una propuesta contra un snapshot de compañerismos existentes.

    La comparación es por igualdad del nombre visible (normalizado), no
    difusa: dos miembros distintos con el mismo nombre visible se tratan como
    conflicto. Para familias también cuenta coincidir en ``memberId``.
    """

    assignments = [as_family_assignment(family) for family in families]
    family_names = [assignment.name for assignment in assignments]
    conflicts = ValidationConflicts(
        duplicate_companions=find_duplicates(companion_names),
        duplicate_families=find_duplicates(family_names),
    )

    overlapping = find_overlap(companion_names, family_names)
    if overlapping:
        conflicts.overlapping = overlapping
        return ValidationResult(
            valid=False,
            error=(
                "Los siguientes están asignados como compañeros y también como familias: "
                f"{', '.join(overlapping)}"
            ),
            conflicts=conflicts,
        )

    others = [
        companionship
        for companionship in companionships
        if not exclude_companionship_id or companionship.id != exclude_companionship_id
    ]

    for companion in companion_names:
        normalized = normalize_name(companion)
        for companionship in others:
            if any(normalize_name(existing) == normalized for existing in companionship.companions):
                conflicts.companion_already_assigned.append(
                    CompanionAssignmentConflict(companion=companion, companionship=companionship.id)
                )
                break

    for assignment in assignments:
        for companionship in others:
            if any(_same_family(assignment, existing) for existing in companionship.families):
                conflicts.family_already_assigned.append(
                    FamilyAssignmentConflict(family=assignment.name, companionship=companionship.id)
                )
                break

    if conflicts.has_conflicts:
        return ValidationResult(valid=False, error=build_error_message(conflicts), conflicts=conflicts)

    return ValidationResult(valid=True, conflicts=conflicts)


class CompanionshipValidator:
    """Carga los compañerismos vigentes y valida propuestas contra ellos."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self.logger = structlog.get_logger("ministering").bind(servicio="validator")

    def load_companionships(self) -> List[Companionship]:
        documents = self.store.query(collections.COMPANIONSHIPS)
        return [Companionship.from_document(document.id, document.data) for document in documents]

    def validate(
        self,
        companion_names: Sequence[str],
        families: Sequence[FamilyInput],
        exclude_companionship_id: Optional[str] = None,
        *,
        companionships: Optional[Sequence[Companionship]] = None,
        log_context: Optional[dict[str, Any]] = None,
    ) -> ValidationResult:
        context = ensure_log_context(
            log_context,
            etapa="validar_companerismo",
            companionship_id=exclude_companionship_id,
        )
        log = bind_log_context(self.logger, context)

        snapshot = list(companionships) if companionships is not None else self.load_companionships()
        result = validate_companionship_data(companion_names, families, snapshot, exclude_companionship_id)

        if result.valid:
            log.debug("companerismo_valido", records_processed=len(snapshot))
        else:
            log.info(
                "⚠️ Conflictos de asignación detectados",
                records_processed=len(snapshot),
                duplicados_companeros=result.conflicts.duplicate_companions,
                duplicados_familias=result.conflicts.duplicate_families,
                superpuestos=result.conflicts.overlapping,
                companeros_asignados=[item.companion for item in result.conflicts.companion_already_assigned],
                familias_asignadas=[item.family for item in result.conflicts.family_already_assigned],
                error_code="validation_conflict",
            )
        return result


__all__ = [
    "CompanionshipValidator",
    "as_family_assignment",
    "build_error_message",
    "find_duplicates",
    "find_overlap",
    "normalize_name",
    "validate_companionship_data",
]
