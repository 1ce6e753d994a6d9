"""Reinicio mensual de la ministración y métricas de avance.

Una vez por periodo (30 días por defecto) se guarda el porcentaje de avance
del mes anterior en ``c_ministracion_historial`` y se marca cada familia como
no visitada. El marcador del último reinicio sólo avanza cuando el lote de
reinicio se confirmó, así que un intento fallido se repite en la siguiente
carga.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from ministracion.logging_utils import bind_log_context, ensure_log_context
from ministracion.models import Companionship, MinisteringHistory, RolloverResult, RolloverState
from ministracion.services import collections
from ministracion.services.document_store import DocumentStore, DocumentStoreError, WriteOperation
from ministracion.services.errors import RolloverError
from ministracion.services.local_storage import KeyValueStorage


def _percentage(visited: int, total: int) -> int:
    """Redondeo estándar (mitad hacia arriba); sin familias el avance es 100."""
    if total <= 0:
        return 100
    return (200 * visited + total) // (2 * total)


def get_companionship_completion(companionship: Companionship) -> int:
    visited = sum(1 for family in companionship.families if family.visited_this_month)
    return _percentage(visited, len(companionship.families))


def calculate_overall_completion(companionships: Iterable[Companionship]) -> int:
    total = 0
    visited = 0
    for companionship in companionships:
        total += len(companionship.families)
        visited += sum(1 for family in companionship.families if family.visited_this_month)
    return _percentage(visited, total)


def previous_month(now: datetime) -> Tuple[int, int]:
    if now.month == 1:
        return now.year - 1, 12
    return now.year, now.month - 1


def history_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RolloverStateRepository:
    """Guarda ``RolloverState`` como texto ISO en un almacenamiento clave-valor."""

    def __init__(self, storage: KeyValueStorage, key: str = "ministeringLastReset") -> None:
        self.storage = storage
        self.key = key

    def load(self) -> RolloverState:
        raw = self.storage.get_item(self.key)
        if not raw:
            return RolloverState()
        # ``toISOString()`` termina en "Z", que fromisoformat no acepta antes de 3.11
        value = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
        try:
            return RolloverState(last_reset_at=_as_utc(datetime.fromisoformat(value)))
        except ValueError:
            structlog.get_logger("rollover").warning(
                "marcador_rollover_invalido",
                etapa="rollover_estado",
                valor=raw,
                error_code="invalid_rollover_marker",
            )
            return RolloverState()

    def save(self, state: RolloverState) -> None:
        if state.last_reset_at is None:
            self.storage.remove_item(self.key)
            return
        self.storage.set_item(self.key, _as_utc(state.last_reset_at).isoformat())


class RolloverService:
    """Motor del reinicio mensual.

    El estado se recibe y se devuelve explícitamente; ``state_repository`` es
    opcional y sólo se usa cuando el llamador no proporciona el estado.
    """

    def __init__(
        self,
        store: DocumentStore,
        state_repository: Optional[RolloverStateRepository] = None,
        *,
        interval_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.state_repository = state_repository
        self.interval = timedelta(days=interval_days)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = structlog.get_logger("rollover").bind(servicio="rollover")

    def load_companionships(self) -> List[Companionship]:
        documents = self.store.query(collections.COMPANIONSHIPS)
        return [Companionship.from_document(document.id, document.data) for document in documents]

    def load_state(self) -> RolloverState:
        if self.state_repository is None:
            return RolloverState()
        return self.state_repository.load()

    def is_due(self, state: RolloverState, now: Optional[datetime] = None) -> bool:
        # Sin marcador se considera pendiente
        if state.last_reset_at is None:
            return True
        current = _as_utc(now or self.clock())
        return current - _as_utc(state.last_reset_at) >= self.interval

    def get_history(self, year: int, month: int) -> Optional[MinisteringHistory]:
        key = history_key(year, month)
        document = self.store.get_document(collections.HISTORY, key)
        if document is None:
            return None
        return MinisteringHistory.from_document(document.id, document.data)

    def previous_month_percentage(self, now: Optional[datetime] = None) -> Optional[int]:
        history = self.get_history(*previous_month(_as_utc(now or self.clock())))
        return history.percentage if history else None

    @staticmethod
    def _reset_visits(store: DocumentStore) -> List[WriteOperation]:
        # Se relee el estado actual: un snapshot viejo no debe pisar marcas
        # de urgencia ni familias agregadas después de cargarlo.
        operations = []
        for document in store.query(collections.COMPANIONSHIPS):
            companionship = Companionship.from_document(document.id, document.data)
            operations.append(
                WriteOperation.update(
                    collections.COMPANIONSHIPS,
                    companionship.id,
                    {
                        "families": [
                            family.model_copy(update={"visited_this_month": False}).to_document()
                            for family in companionship.families
                        ]
                    },
                )
            )
        if operations:
            store.batch_write(operations)
        return operations

    def run_rollover(
        self,
        companionships: Optional[List[Companionship]] = None,
        *,
        state: Optional[RolloverState] = None,
        now: Optional[datetime] = None,
        force: bool = False,
        log_context: Optional[Dict[str, Any]] = None,
    ) -> RolloverResult:
        """Ejecuta el reinicio si corresponde.

        Args:
            companionships: Snapshot ya cargado; sólo se usa para calcular el
                avance del mes anterior. El lote de reinicio se arma con una
                lectura fresca dentro de una transacción.
            state: Marcador actual. Si se omite se lee del repositorio.
            now: Momento de referencia (UTC).
            force: Ejecuta aunque el marcador esté vigente.

        Raises:
            RolloverError: Si falla la escritura del historial o del lote.
                El marcador no se avanza.
        """

        current = _as_utc(now or self.clock())
        state = state if state is not None else self.load_state()
        log = bind_log_context(self.logger, ensure_log_context(log_context, etapa="rollover_mensual"))

        try:
            snapshot = companionships if companionships is not None else self.load_companionships()
        except DocumentStoreError as exc:
            log.error("❌ No se pudieron cargar los compañerismos", error=str(exc), error_code="rollover_load_failed")
            raise RolloverError(str(exc), error_code="rollover_load_failed") from exc

        if not force and not self.is_due(state, current):
            log.debug("rollover_no_requerido", ultimo_reinicio=state.last_reset_at)
            return RolloverResult(performed=False, state=state, companionships=snapshot)

        year, month = previous_month(current)
        percentage = calculate_overall_completion(snapshot)
        history = MinisteringHistory(
            id=history_key(year, month),
            percentage=percentage,
            year=f"{year:04d}",
            month=f"{month:02d}",
        )

        log.info(
            "🗓️ Iniciando reinicio mensual",
            periodo=history.id,
            porcentaje=percentage,
            records_processed=len(snapshot),
        )

        try:
            history_data = history.to_document()
            history_data["createdAt"] = self.store.server_timestamp()
            self.store.set_document(collections.HISTORY, history.id, history_data)

            operations = self.store.run_in_transaction(self._reset_visits)
        except DocumentStoreError as exc:
            log.error(
                "❌ Falló el reinicio mensual",
                periodo=history.id,
                error=str(exc),
                error_code="rollover_failed",
            )
            raise RolloverError(str(exc), error_code="rollover_failed") from exc

        new_state = RolloverState(last_reset_at=current)
        if self.state_repository is not None:
            self.state_repository.save(new_state)

        try:
            refreshed = self.load_companionships()
        except DocumentStoreError as exc:
            log.warning("⚠️ No se pudo recargar tras el reinicio", error=str(exc), error_code="rollover_reload_failed")
            refreshed = [
                companionship.model_copy(
                    update={
                        "families": [
                            family.model_copy(update={"visited_this_month": False})
                            for family in companionship.families
                        ]
                    }
                )
                for companionship in snapshot
            ]

        log.info("✅ Reinicio mensual completado", periodo=history.id, records_processed=len(operations))
        return RolloverResult(
            performed=True,
            state=new_state,
            history=history,
            previous_percentage=percentage,
            companionships=refreshed,
        )


__all__ = [
    "RolloverService",
    "RolloverStateRepository",
    "calculate_overall_completion",
    "get_companionship_completion",
    "history_key",
    "previous_month",
]
