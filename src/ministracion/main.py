"""
Servicio de Ministración del Quórum
API HTTP sobre el motor de consistencia de compañerismos, distritos y reinicio mensual
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ministracion.config import Settings, configure_logging, get_settings
from ministracion.logging_utils import bind_log_context, ensure_log_context, new_request_id
from ministracion.models import (
    Companionship,
    CompanionshipDeleteResult,
    CompanionshipDraft,
    CompanionshipSaveResult,
    MigrationResult,
    MinisteringDistrict,
    MinisteringStats,
    RolloverResult,
    UrgentFamily,
)
from ministracion.services.companionship_service import CompanionshipService
from ministracion.services.district_service import DistrictService
from ministracion.services.document_store import DocumentStore, DocumentStoreError, create_document_store
from ministracion.services.errors import MinisteringError, RolloverError
from ministracion.services.local_storage import JsonFileKeyValueStorage
from ministracion.services.ministering_sync import MinisteringSyncService
from ministracion.services.notifications import DocumentStoreNotificationDispatcher
from ministracion.services.reverse_sync import ReverseSyncEngine
from ministracion.services.rollover_service import RolloverService, RolloverStateRepository
from ministracion.services.validators import CompanionshipValidator


@dataclass
class ServiceContainer:
    store: DocumentStore
    companionships: CompanionshipService
    districts: DistrictService
    rollover: RolloverService
    ministering_sync: MinisteringSyncService


services: Optional[ServiceContainer] = None
logger = structlog.get_logger("app")


def build_services(settings: Settings, store: Optional[DocumentStore] = None) -> ServiceContainer:
    """Construye los servicios a partir de la configuración."""

    store = store or create_document_store(settings)
    districts = DistrictService.from_settings(store, settings)
    rollover = RolloverService(
        store,
        RolloverStateRepository(
            JsonFileKeyValueStorage(Path(settings.rollover_state_path)),
            settings.rollover_state_key,
        ),
        interval_days=settings.rollover_interval_days,
    )
    companionships = CompanionshipService(
        store,
        validator=CompanionshipValidator(store),
        reverse_sync=ReverseSyncEngine(store, family_name_prefixes=settings.family_name_prefixes),
        districts=districts,
        rollover=rollover,
        notifier=DocumentStoreNotificationDispatcher(store),
    )
    return ServiceContainer(
        store=store,
        companionships=companionships,
        districts=districts,
        rollover=rollover,
        ministering_sync=MinisteringSyncService(store, family_name_prefix=settings.family_name_prefix),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configuración del ciclo de vida de la aplicación"""
    global services

    settings = get_settings()
    configure_logging(settings)

    startup_logger = bind_log_context(logger, ensure_log_context(etapa="startup"))
    startup_logger.info("Iniciando servicio de ministración", provider=settings.document_store_provider)
    services = build_services(settings)

    yield

    bind_log_context(logger, ensure_log_context(etapa="shutdown")).info("Cerrando servicio de ministración")
    services = None


app = FastAPI(
    title="Ministración del Quórum",
    description="Compañerismos, distritos y seguimiento mensual de ministración",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    """Adjunta un ``request_id`` a todos los eventos emitidos durante la petición."""
    request_id = request.headers.get("X-Request-ID") or new_request_id()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.unbind_contextvars("request_id")
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(MinisteringError)
async def ministering_error_handler(request: Request, exc: MinisteringError) -> JSONResponse:
    status_code = 404 if (exc.error_code or "").endswith("_not_found") else 500
    if isinstance(exc, RolloverError):
        status_code = 503
    bind_log_context(logger, ensure_log_context(etapa="http", error_code=exc.error_code)).warning(
        "Error de ministración",
        ruta=request.url.path,
        error=str(exc),
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error_code": exc.error_code})


@app.exception_handler(DocumentStoreError)
async def document_store_error_handler(request: Request, exc: DocumentStoreError) -> JSONResponse:
    bind_log_context(logger, ensure_log_context(etapa="http", error_code="store_error")).error(
        "Error del almacén documental",
        ruta=request.url.path,
        error=str(exc),
    )
    return JSONResponse(
        status_code=503,
        content={"detail": "No se pudieron cargar los datos.", "error_code": "store_error"},
    )


def _container() -> ServiceContainer:
    if services is None:
        raise HTTPException(status_code=503, detail="Servicio de ministración no inicializado")
    return services


def get_companionship_service() -> CompanionshipService:
    return _container().companionships


def get_district_service() -> DistrictService:
    return _container().districts


def get_rollover_service() -> RolloverService:
    return _container().rollover


def get_ministering_sync_service() -> MinisteringSyncService:
    return _container().ministering_sync


class FamilyVisitRequest(BaseModel):
    visited_this_month: bool = Field(..., description="Marca de visita del mes en curso")


class UrgentFamilyRequest(BaseModel):
    observation: str = Field(..., min_length=1, description="Descripción de la necesidad")


class UrgentFamilyResponse(BaseModel):
    companionship: Companionship
    warnings: List[str] = Field(default_factory=list)


class DistrictMoveRequest(BaseModel):
    district_id: Optional[str] = Field(default=None, description="Distrito destino; nulo para quitarlo de todos")


class DistrictLeaderRequest(BaseModel):
    leader_id: Optional[str] = Field(default=None, description="Miembro líder; nulo para quitarlo")


class RolloverRequest(BaseModel):
    force: bool = Field(False, description="Ejecutar aunque el marcador siga vigente")


class MemberSyncRequest(BaseModel):
    previous_teachers: List[str] = Field(default_factory=list)


class MemberSyncResponse(BaseModel):
    member_id: str
    companionships_updated: List[str]


class MigrationRequest(BaseModel):
    batch_size: int = Field(default=10, ge=1, le=500)
    dry_run: bool = False


def _raise_invalid(result: CompanionshipSaveResult) -> None:
    if not result.saved:
        raise HTTPException(
            status_code=422,
            detail={
                "error": result.validation.error,
                "conflicts": result.validation.conflicts.model_dump(),
            },
        )


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "ministering-service",
        "version": "1.0.0",
    }


@app.get("/companionships", response_model=List[Companionship])
def list_companionships(service: CompanionshipService = Depends(get_companionship_service)):
    return service.list_companionships()


@app.post("/companionships", response_model=CompanionshipSaveResult, status_code=201)
def create_companionship(
    payload: CompanionshipDraft,
    service: CompanionshipService = Depends(get_companionship_service),
):
    result = service.create_companionship(payload, log_context=ensure_log_context(etapa="crear_companerismo"))
    _raise_invalid(result)
    return result


@app.get("/companionships/{companionship_id}", response_model=Companionship)
def get_companionship(companionship_id: str, service: CompanionshipService = Depends(get_companionship_service)):
    return service.get_companionship(companionship_id)


@app.put("/companionships/{companionship_id}", response_model=CompanionshipSaveResult)
def update_companionship(
    companionship_id: str,
    payload: CompanionshipDraft,
    service: CompanionshipService = Depends(get_companionship_service),
):
    result = service.update_companionship(companionship_id, payload)
    _raise_invalid(result)
    return result


@app.delete("/companionships/{companionship_id}", response_model=CompanionshipDeleteResult)
def delete_companionship(companionship_id: str, service: CompanionshipService = Depends(get_companionship_service)):
    return service.delete_companionship(companionship_id)


@app.patch("/companionships/{companionship_id}/families/{family_name}", response_model=Companionship)
def set_family_visited(
    companionship_id: str,
    family_name: str,
    payload: FamilyVisitRequest,
    service: CompanionshipService = Depends(get_companionship_service),
):
    return service.set_family_visited(companionship_id, family_name, payload.visited_this_month)


@app.post("/companionships/{companionship_id}/families/{family_name}/urgent", response_model=UrgentFamilyResponse)
def mark_family_urgent(
    companionship_id: str,
    family_name: str,
    payload: UrgentFamilyRequest,
    service: CompanionshipService = Depends(get_companionship_service),
):
    companionship, warnings = service.mark_family_urgent(companionship_id, family_name, payload.observation)
    return UrgentFamilyResponse(companionship=companionship, warnings=warnings)


@app.delete("/companionships/{companionship_id}/families/{family_name}/urgent", response_model=Companionship)
def resolve_family_urgency(
    companionship_id: str,
    family_name: str,
    service: CompanionshipService = Depends(get_companionship_service),
):
    return service.resolve_family_urgency(companionship_id, family_name)


@app.get("/urgent-families", response_model=List[UrgentFamily])
def list_urgent_families(service: CompanionshipService = Depends(get_companionship_service)):
    return service.list_urgent_families()


@app.get("/districts", response_model=List[MinisteringDistrict])
def list_districts(service: DistrictService = Depends(get_district_service)):
    return service.ensure_districts(log_context=ensure_log_context(etapa="distritos_bootstrap"))


@app.post("/districts/{district_id}/companionships/{companionship_id}", response_model=MinisteringDistrict)
def toggle_district_membership(
    district_id: str,
    companionship_id: str,
    service: DistrictService = Depends(get_district_service),
):
    return service.assign_companionship_to_district(district_id, companionship_id)


@app.put("/companionships/{companionship_id}/district")
def move_companionship(
    companionship_id: str,
    payload: DistrictMoveRequest,
    service: DistrictService = Depends(get_district_service),
):
    updated = service.move_companionship_to_district(companionship_id, payload.district_id)
    return {"companionship_id": companionship_id, "district_id": payload.district_id, "districts_updated": updated}


@app.put("/districts/{district_id}/leader", response_model=MinisteringDistrict)
def assign_district_leader(
    district_id: str,
    payload: DistrictLeaderRequest,
    service: DistrictService = Depends(get_district_service),
):
    return service.assign_leader_to_district(district_id, payload.leader_id)


@app.post("/rollover", response_model=RolloverResult)
def run_rollover(payload: RolloverRequest, service: RolloverService = Depends(get_rollover_service)):
    return service.run_rollover(force=payload.force, log_context=ensure_log_context(etapa="rollover_mensual"))


@app.get("/stats", response_model=MinisteringStats)
def get_stats(service: CompanionshipService = Depends(get_companionship_service)):
    return service.get_stats()


@app.post("/members/{member_id}/sync", response_model=MemberSyncResponse)
def sync_member(
    member_id: str,
    payload: MemberSyncRequest,
    service: MinisteringSyncService = Depends(get_ministering_sync_service),
):
    updated = service.sync_member(member_id, payload.previous_teachers)
    return MemberSyncResponse(member_id=member_id, companionships_updated=updated)


@app.post("/migration", response_model=MigrationResult)
def migrate_assignments(
    payload: MigrationRequest,
    service: MinisteringSyncService = Depends(get_ministering_sync_service),
):
    return service.migrate_existing_assignments(batch_size=payload.batch_size, dry_run=payload.dry_run)


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(app, host=_settings.api_host, port=_settings.api_port)
