"""Orquestación de compañerismos: alta, edición, baja y estado por familia."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ministracion.logging_utils import bind_log_context, ensure_log_context
from ministracion.models import (
    Companionship,
    CompanionshipDeleteResult,
    CompanionshipDraft,
    CompanionshipSaveResult,
    Family,
    MinisteringStats,
    UrgentFamily,
    ValidationResult,
)
from ministracion.services import collections
from ministracion.services.district_service import DistrictService
from ministracion.services.document_store import DocumentStore, DocumentStoreError
from ministracion.services.errors import CompanionshipNotFoundError, FamilyNotFoundError
from ministracion.services.notifications import NotificationDispatcher, NullNotificationDispatcher, urgent_family_notification
from ministracion.services.reverse_sync import ReverseSyncEngine
from ministracion.services.rollover_service import RolloverService, calculate_overall_completion
from ministracion.services.validators import CompanionshipValidator


def merge_families(draft: CompanionshipDraft, existing: Optional[Companionship] = None) -> List[Family]:
    """Construye las familias a guardar conservando el estado de las que ya existían."""

    families: List[Family] = []
    for assignment in draft.families:
        previous = existing.find_family(assignment.name) if existing else None
        if previous is None:
            families.append(Family(name=assignment.name, member_id=assignment.member_id))
            continue
        families.append(
            previous.model_copy(update={"member_id": assignment.member_id or previous.member_id})
        )
    return families


class CompanionshipService:
    """Punto de entrada de las operaciones de ministración.

    La validación y la escritura del compañerismo se ejecutan dentro de
    ``run_in_transaction``. La sincronización de miembros se hace después
    y es de mejor esfuerzo: sus fallos se devuelven como advertencias.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        validator: Optional[CompanionshipValidator] = None,
        reverse_sync: Optional[ReverseSyncEngine] = None,
        districts: Optional[DistrictService] = None,
        rollover: Optional[RolloverService] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.store = store
        self.validator = validator or CompanionshipValidator(store)
        self.reverse_sync = reverse_sync or ReverseSyncEngine(store)
        self.districts = districts or DistrictService(store)
        self.rollover = rollover or RolloverService(store)
        self.notifier = notifier or NullNotificationDispatcher()
        self.logger = structlog.get_logger("ministering").bind(servicio="companionships")

    # ------------------------------------------------------------------
    # Lectura
    # ------------------------------------------------------------------
    def list_companionships(self) -> List[Companionship]:
        documents = self.store.query(collections.COMPANIONSHIPS)
        return [Companionship.from_document(document.id, document.data) for document in documents]

    def get_companionship(self, companionship_id: str) -> Companionship:
        document = self.store.get_document(collections.COMPANIONSHIPS, companionship_id)
        if document is None:
            raise CompanionshipNotFoundError(companionship_id)
        return Companionship.from_document(document.id, document.data)

    # ------------------------------------------------------------------
    # Alta / edición / baja
    # ------------------------------------------------------------------
    def create_companionship(
        self,
        draft: CompanionshipDraft,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> CompanionshipSaveResult:
        context = ensure_log_context(log_context, etapa="crear_companerismo", district_id=draft.district_id)
        log = bind_log_context(self.logger, context)
        if draft.district_id:
            self.districts.get_district(draft.district_id)

        def _validate_and_write(store: DocumentStore) -> Tuple[ValidationResult, Optional[Companionship]]:
            validation = self.validator.validate(draft.companions, draft.families, log_context=context)
            if not validation.valid:
                return validation, None
            companionship = Companionship(
                id=store.new_document_id(collections.COMPANIONSHIPS),
                companions=draft.companions,
                families=merge_families(draft),
            )
            store.set_document(collections.COMPANIONSHIPS, companionship.id, companionship.to_document())
            return validation, companionship

        try:
            validation, companionship = self.store.run_in_transaction(_validate_and_write)
        except DocumentStoreError as exc:
            log.error("❌ No se pudo guardar el compañerismo", error=str(exc), error_code="store_error")
            raise

        if companionship is None:
            return CompanionshipSaveResult(saved=False, validation=validation)

        context["companionship_id"] = companionship.id
        sync = self.reverse_sync.add_teachers_to_families(
            companionship.companions,
            draft.families,
            log_context=context,
        )
        warnings = sync.warnings()
        warnings.extend(self._assign_district(companionship.id, draft.district_id, context))

        bind_log_context(log, context).info(
            "✅ Compañerismo creado",
            companeros=companionship.companions,
            records_processed=len(companionship.families),
        )
        return CompanionshipSaveResult(
            saved=True,
            validation=validation,
            companionship=companionship,
            sync=sync,
            warnings=warnings,
        )

    def update_companionship(
        self,
        companionship_id: str,
        draft: CompanionshipDraft,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> CompanionshipSaveResult:
        context = ensure_log_context(
            log_context,
            etapa="editar_companerismo",
            companionship_id=companionship_id,
            district_id=draft.district_id,
        )
        log = bind_log_context(self.logger, context)
        if draft.district_id:
            self.districts.get_district(draft.district_id)

        def _validate_and_write(
            store: DocumentStore,
        ) -> Tuple[ValidationResult, Companionship, Optional[Companionship]]:
            existing = self.get_companionship(companionship_id)
            validation = self.validator.validate(
                draft.companions,
                draft.families,
                companionship_id,
                log_context=context,
            )
            if not validation.valid:
                return validation, existing, None
            updated = Companionship(
                id=companionship_id,
                companions=draft.companions,
                families=merge_families(draft, existing),
            )
            store.update_document(collections.COMPANIONSHIPS, companionship_id, updated.to_document())
            return validation, existing, updated

        try:
            validation, existing, updated = self.store.run_in_transaction(_validate_and_write)
        except DocumentStoreError as exc:
            log.error("❌ No se pudo actualizar el compañerismo", error=str(exc), error_code="store_error")
            raise

        if updated is None:
            return CompanionshipSaveResult(saved=False, validation=validation, companionship=existing)

        sync = self.reverse_sync.update_teachers_on_companionship_change(
            existing.companions,
            updated.companions,
            existing.families,
            updated.families,
            log_context=context,
        )
        warnings = sync.warnings()
        warnings.extend(self._assign_district(companionship_id, draft.district_id, context))

        log.info(
            "✅ Compañerismo actualizado",
            companeros=updated.companions,
            records_processed=len(updated.families),
            records_skipped=len(sync.failed_members),
        )
        return CompanionshipSaveResult(
            saved=True,
            validation=validation,
            companionship=updated,
            sync=sync,
            warnings=warnings,
        )

    def delete_companionship(
        self,
        companionship_id: str,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> CompanionshipDeleteResult:
        """Quita los maestros de los miembros, borra el documento y lo saca de los distritos."""

        context = ensure_log_context(log_context, etapa="eliminar_companerismo", companionship_id=companionship_id)
        log = bind_log_context(self.logger, context)
        companionship = self.get_companionship(companionship_id)

        sync = self.reverse_sync.remove_teachers_from_families(
            companionship.companions,
            companionship.families,
            log_context=context,
        )

        try:
            self.store.delete_document(collections.COMPANIONSHIPS, companionship_id)
        except DocumentStoreError as exc:
            log.error("❌ No se pudo eliminar el compañerismo", error=str(exc), error_code="store_error")
            raise

        warnings = sync.warnings()
        districts_updated: List[str] = []
        try:
            districts_updated = self.districts.remove_companionship_from_districts(
                companionship_id,
                log_context=context,
            )
        except DocumentStoreError as exc:
            log.warning("⚠️ No se pudo limpiar la membresía de distritos", error=str(exc), error_code="district_cleanup_failed")
            warnings.append(f"No se pudo quitar el compañerismo de sus distritos: {exc}")

        log.info("🗑️ Compañerismo eliminado", records_processed=sync.updated_count)
        return CompanionshipDeleteResult(
            companionship_id=companionship_id,
            sync=sync,
            districts_updated=districts_updated,
            warnings=warnings,
        )

    def _assign_district(
        self,
        companionship_id: str,
        district_id: Optional[str],
        context: Dict[str, Any],
    ) -> List[str]:
        if not district_id:
            return []
        try:
            self.districts.move_companionship_to_district(companionship_id, district_id, log_context=context)
        except DocumentStoreError as exc:
            bind_log_context(self.logger, context).warning(
                "⚠️ No se pudo asignar el distrito",
                error=str(exc),
                error_code="district_assignment_failed",
            )
            return [f"No se pudo asignar el distrito {district_id}: {exc}"]
        return []

    # ------------------------------------------------------------------
    # Estado por familia
    # ------------------------------------------------------------------
    def _update_family(self, companionship_id: str, family_name: str, **changes: Any) -> Companionship:
        def _write(store: DocumentStore) -> Companionship:
            companionship = self.get_companionship(companionship_id)
            if companionship.find_family(family_name) is None:
                raise FamilyNotFoundError(companionship_id, family_name)
            companionship.families = [
                family.model_copy(update=changes) if family.name == family_name else family
                for family in companionship.families
            ]
            store.update_document(
                collections.COMPANIONSHIPS,
                companionship_id,
                {"families": [family.to_document() for family in companionship.families]},
            )
            return companionship

        return self.store.run_in_transaction(_write)

    def set_family_visited(
        self,
        companionship_id: str,
        family_name: str,
        visited: bool,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> Companionship:
        companionship = self._update_family(companionship_id, family_name, visited_this_month=visited)
        bind_log_context(
            self.logger,
            ensure_log_context(log_context, etapa="visita_familia", companionship_id=companionship_id),
        ).info("familia_visita_actualizada", familia=family_name, visitada=visited)
        return companionship

    def mark_family_urgent(
        self,
        companionship_id: str,
        family_name: str,
        observation: str,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Companionship, List[str]]:
        """Marca la familia como urgente y avisa a todos los usuarios.

        Un fallo al notificar no revierte la marca; se devuelve como advertencia.
        """

        log = bind_log_context(
            self.logger,
            ensure_log_context(log_context, etapa="familia_urgente", companionship_id=companionship_id),
        )
        companionship = self._update_family(
            companionship_id,
            family_name,
            is_urgent=True,
            observation=observation,
        )
        log.info("🚨 Familia marcada como urgente", familia=family_name)

        warnings: List[str] = []
        try:
            self.notifier.notify_all(urgent_family_notification(family_name, observation, companionship_id))
        except Exception as exc:  # noqa: BLE001
            log.warning("⚠️ No se pudo notificar la necesidad urgente", error=str(exc), error_code="notification_failed")
            warnings.append(f"No se pudo enviar la notificación: {exc}")
        return companionship, warnings

    def resolve_family_urgency(
        self,
        companionship_id: str,
        family_name: str,
        *,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> Companionship:
        companionship = self._update_family(companionship_id, family_name, is_urgent=False, observation="")
        bind_log_context(
            self.logger,
            ensure_log_context(log_context, etapa="familia_urgente", companionship_id=companionship_id),
        ).info("familia_urgencia_resuelta", familia=family_name)
        return companionship

    def list_urgent_families(self) -> List[UrgentFamily]:
        return [
            UrgentFamily(companionship_id=companionship.id, companions=companionship.companions, family=family)
            for companionship in self.list_companionships()
            for family in companionship.families
            if family.is_urgent
        ]

    # ------------------------------------------------------------------
    # Indicadores
    # ------------------------------------------------------------------
    def get_stats(
        self,
        companionships: Optional[List[Companionship]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> MinisteringStats:
        snapshot = companionships if companionships is not None else self.list_companionships()
        families = [family for companionship in snapshot for family in companionship.families]
        completion = calculate_overall_completion(snapshot)
        previous = self.rollover.previous_month_percentage(now)

        return MinisteringStats(
            total_companionships=len(snapshot),
            total_families=len(families),
            visited_families=sum(1 for family in families if family.visited_this_month),
            completion=completion,
            up_to_date_companionships=sum(
                1 for companionship in snapshot
                if all(family.visited_this_month for family in companionship.families)
            ),
            urgent_families=sum(1 for family in families if family.is_urgent),
            previous_percentage=previous,
            delta_vs_previous=completion - previous if previous is not None else None,
        )


__all__ = ["CompanionshipService", "merge_families"]
