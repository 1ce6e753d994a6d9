"""Sincronización directa: de ``ministeringTeachers`` de un miembro a compañerismos.

Cuando el perfil del miembro edita sus maestros ministrantes, la familia se
retira de los compañerismos de los maestros anteriores y se agrega al
compañerismo cuyos compañeros coinciden exactamente con la nueva lista
(sin importar el orden). Si ninguno coincide se crea uno nuevo.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from ministracion.logging_utils import bind_log_context, ensure_log_context
from ministracion.models import Companionship, FailedMemberUpdate, Family, Member, MigrationResult
from ministracion.services import collections
from ministracion.services.document_store import DocumentStore, DocumentStoreError, WriteOperation
from ministracion.services.errors import MemberNotFoundError, MinisteringError

ProgressCallback = Callable[[int, int], None]


class MinisteringSyncService:
    """Sincronización miembro → compañerismos y migración masiva."""

    def __init__(self, store: DocumentStore, *, family_name_prefix: str = "Familia ") -> None:
        self.store = store
        self.family_name_prefix = family_name_prefix
        self.logger = structlog.get_logger("ministering").bind(servicio="ministering_sync")

    def _load_companionships(self) -> List[Companionship]:
        documents = self.store.query(collections.COMPANIONSHIPS)
        return [Companionship.from_document(document.id, document.data) for document in documents]

    def get_member(self, member_id: str) -> Member:
        document = self.store.get_document(collections.MEMBERS, member_id)
        if document is None:
            raise MemberNotFoundError(member_id)
        return Member.from_document(document.id, document.data)

    def _belongs_to(self, family: Family, member: Member, family_name: str) -> bool:
        if family.member_id:
            return family.member_id == member.id
        return family.name == family_name

    def sync_ministering_assignments(
        self,
        member: Member,
        previous_teachers: Optional[Sequence[str]] = None,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """Aplica los cambios y devuelve los IDs de compañerismos escritos.

        Raises:
            MinisteringError: Si falla la lectura o la escritura en el almacén.
        """

        previous = list(previous_teachers or [])
        current = list(member.ministering_teachers)
        family_name = member.family_name(self.family_name_prefix)
        log = bind_log_context(
            self.logger,
            ensure_log_context(log_context, etapa="sync_miembro", member_id=member.id),
        )

        if not current and not previous:
            return []

        try:
            companionships = self._load_companionships()
            changed: Dict[str, Companionship] = {}

            if previous:
                for companionship in companionships:
                    if not any(teacher in companionship.companions for teacher in previous):
                        continue
                    remaining = [
                        family for family in companionship.families
                        if not self._belongs_to(family, member, family_name)
                    ]
                    if len(remaining) != len(companionship.families):
                        companionship.families = remaining
                        changed[companionship.id] = companionship

            created: Optional[Companionship] = None
            if current:
                match = next(
                    (c for c in companionships if sorted(c.companions) == sorted(current)),
                    None,
                )
                new_family = Family(name=family_name, member_id=member.id)
                if match is None:
                    created = Companionship(
                        id=self.store.new_document_id(collections.COMPANIONSHIPS),
                        companions=current,
                        families=[new_family],
                    )
                elif not any(self._belongs_to(family, member, family_name) for family in match.families):
                    match.families.append(new_family)
                    changed[match.id] = match

            operations = [
                WriteOperation.update(
                    collections.COMPANIONSHIPS,
                    companionship.id,
                    {"families": [family.to_document() for family in companionship.families]},
                )
                for companionship in changed.values()
            ]
            if created is not None:
                operations.append(WriteOperation.set(collections.COMPANIONSHIPS, created.id, created.to_document()))
            if operations:
                self.store.batch_write(operations)
        except DocumentStoreError as exc:
            log.error("❌ Error al sincronizar asignaciones", error=str(exc), error_code="member_sync_failed")
            raise MinisteringError(
                f"Error al sincronizar asignaciones de ministración: {exc}",
                error_code="member_sync_failed",
            ) from exc

        written = [operation.document_id for operation in operations]
        log.info(
            "🔄 Asignaciones del miembro sincronizadas",
            familia=family_name,
            maestros=current,
            maestros_previos=previous,
            companerismo_creado=created.id if created else None,
            records_processed=len(written),
        )
        return written

    def sync_member(
        self,
        member_id: str,
        previous_teachers: Optional[Sequence[str]] = None,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        return self.sync_ministering_assignments(
            self.get_member(member_id),
            previous_teachers,
            log_context=log_context,
        )

    def migrate_existing_assignments(
        self,
        *,
        batch_size: int = 10,
        dry_run: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> MigrationResult:
        """Recorre los miembros con maestros y sincroniza cada uno.

        Los fallos por miembro se acumulan; la migración continúa.
        """

        if batch_size < 1:
            raise ValueError("batch_size debe ser mayor que cero")

        started = time.perf_counter()
        log = bind_log_context(
            self.logger,
            ensure_log_context(log_context, etapa="migracion_ministracion"),
        ).bind(dry_run=dry_run)

        members = [
            Member.from_document(document.id, document.data)
            for document in self.store.query(collections.MEMBERS)
        ]
        to_process = [member for member in members if member.ministering_teachers]
        result = MigrationResult(
            success=True,
            total_members=len(members),
            processed_members=0,
            synced_members=0,
        )
        log.info("🚚 Iniciando migración", records_processed=len(to_process), total=len(members))

        for start in range(0, len(to_process), batch_size):
            for member in to_process[start:start + batch_size]:
                result.processed_members += 1
                if dry_run:
                    continue
                try:
                    self.sync_ministering_assignments(member, [], log_context=log_context)
                except MinisteringError as exc:
                    result.failed_members.append(FailedMemberUpdate(id=member.id, name=member.full_name, error=str(exc)))
                    log.warning("⚠️ Migración fallida para miembro", member_id=member.id, error=str(exc))
                    continue
                result.synced_members += 1

            if on_progress:
                on_progress(min(start + batch_size, len(to_process)), len(to_process))

        result.success = not result.failed_members
        result.duration_seconds = round(time.perf_counter() - started, 3)
        log.info(
            "✅ Migración finalizada",
            records_processed=result.processed_members,
            sincronizados=result.synced_members,
            fallidos=len(result.failed_members),
            duracion_segundos=result.duration_seconds,
        )
        return result


__all__ = ["MinisteringSyncService", "ProgressCallback"]
