"""
Modelos de datos para el servicio de Ministración
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class MemberStatus(str, Enum):
    """Estados posibles de un miembro"""
    ACTIVE = "active"
    LESS_ACTIVE = "less_active"
    INACTIVE = "inactive"
    DECEASED = "deceased"


class DocumentModel(BaseModel):
    """Base para modelos persistidos como documentos (claves camelCase)."""

    class Config:
        populate_by_name = True
        extra = "ignore"

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"})


class Family(DocumentModel):
    """Familia asignada a un compañerismo"""
    name: str
    member_id: Optional[str] = Field(default=None, alias="memberId")
    visited_this_month: bool = Field(default=False, alias="visitedThisMonth")
    is_urgent: bool = Field(default=False, alias="isUrgent")
    observation: str = ""

    @field_validator('observation', mode='before')
    def coerce_observation(cls, v: Any) -> str:
        return v or ""


class FamilyAssignment(BaseModel):
    """Referencia ligera a una familia propuesta en un formulario."""
    name: str
    member_id: Optional[str] = Field(default=None, alias="memberId")

    class Config:
        populate_by_name = True

    @field_validator('name')
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('El nombre es requerido.')
        return v.strip()


class Companionship(DocumentModel):
    """Compañerismo de ministración"""
    id: str = ""
    companions: List[str] = Field(default_factory=list)
    families: List[Family] = Field(default_factory=list)

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Companionship":
        return cls(id=doc_id, **data)

    @property
    def family_names(self) -> List[str]:
        return [family.name for family in self.families]

    @property
    def has_urgent_family(self) -> bool:
        return any(family.is_urgent for family in self.families)

    def find_family(self, name: str) -> Optional[Family]:
        for family in self.families:
            if family.name == name:
                return family
        return None


class MinisteringDistrict(DocumentModel):
    """Distrito que agrupa compañerismos"""
    id: str = ""
    name: str
    companionship_ids: List[str] = Field(default_factory=list, alias="companionshipIds")
    leader_id: Optional[str] = Field(default=None, alias="leaderId")
    leader_name: Optional[str] = Field(default=None, alias="leaderName")
    updated_at: Optional[Any] = Field(default=None, alias="updatedAt")

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "MinisteringDistrict":
        return cls(id=doc_id, **data)


class MinisteringHistory(DocumentModel):
    """Snapshot mensual del porcentaje de ministración (clave ``yyyy-MM``)."""
    id: str = ""
    percentage: int
    year: str
    month: str
    created_at: Optional[Any] = Field(default=None, alias="createdAt")

    @field_validator('percentage')
    def validate_percentage(cls, value: int) -> int:
        if value < 0 or value > 100:
            raise ValueError('percentage must be between 0 and 100')
        return value

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "MinisteringHistory":
        return cls(id=doc_id, **data)


class Member(DocumentModel):
    """Miembro del directorio (solo los campos relevantes para ministración)"""
    id: str = ""
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    status: MemberStatus = MemberStatus.ACTIVE
    ministering_teachers: List[str] = Field(default_factory=list, alias="ministeringTeachers")

    @field_validator('ministering_teachers', mode='before')
    def coerce_teachers(cls, v: Any) -> List[str]:
        return list(v or [])

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Member":
        return cls(id=doc_id, **data)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def family_name(self, prefix: str = "Familia ") -> str:
        return f"{prefix}{self.last_name}"


class CompanionshipDraft(BaseModel):
    """Datos capturados en el formulario de alta/edición de compañerismo."""
    companions: List[str]
    families: List[FamilyAssignment]
    district_id: Optional[str] = None

    @field_validator('companions')
    def validate_companions(cls, value: List[str]) -> List[str]:
        cleaned = [companion.strip() for companion in value]
        if any(not companion for companion in cleaned):
            raise ValueError('El nombre es requerido.')
        if len(cleaned) < 2:
            raise ValueError('Se requieren al menos dos compañeros.')
        return cleaned

    @field_validator('families')
    def validate_families(cls, value: List[FamilyAssignment]) -> List[FamilyAssignment]:
        if len(value) < 1:
            raise ValueError('Se requiere al menos una familia.')
        return value


class CompanionAssignmentConflict(BaseModel):
    companion: str
    companionship: str


class FamilyAssignmentConflict(BaseModel):
    family: str
    companionship: str


class ValidationConflicts(BaseModel):
    """Detalle de conflictos detectados al validar un compañerismo."""
    duplicate_companions: List[str] = Field(default_factory=list)
    duplicate_families: List[str] = Field(default_factory=list)
    overlapping: List[str] = Field(default_factory=list)
    companion_already_assigned: List[CompanionAssignmentConflict] = Field(default_factory=list)
    family_already_assigned: List[FamilyAssignmentConflict] = Field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(
            self.duplicate_companions
            or self.duplicate_families
            or self.overlapping
            or self.companion_already_assigned
            or self.family_already_assigned
        )


class ValidationResult(BaseModel):
    """Resultado de validar un compañerismo. Nunca se lanza como excepción."""
    valid: bool
    error: Optional[str] = None
    conflicts: ValidationConflicts = Field(default_factory=ValidationConflicts)


class FailedMemberUpdate(BaseModel):
    id: str
    name: str
    error: str


class SyncResult(BaseModel):
    """Resultado de una sincronización inversa (best-effort)."""
    success: bool = True
    updated_count: int = 0
    failed_members: List[FailedMemberUpdate] = Field(default_factory=list)

    def record_failure(self, member_id: str, name: str, error: str) -> None:
        self.failed_members.append(FailedMemberUpdate(id=member_id, name=name, error=error))
        self.success = False

    def warnings(self) -> List[str]:
        return [
            f"No se pudo actualizar a {failed.name} ({failed.id}): {failed.error}"
            for failed in self.failed_members
        ]


class CompanionshipSaveResult(BaseModel):
    """Resultado de guardar un compañerismo desde el formulario."""
    saved: bool
    validation: ValidationResult
    companionship: Optional[Companionship] = None
    sync: Optional[SyncResult] = None
    warnings: List[str] = Field(default_factory=list)


class CompanionshipDeleteResult(BaseModel):
    companionship_id: str
    sync: SyncResult
    districts_updated: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class RolloverState(BaseModel):
    """Marcador local del último reinicio mensual."""
    last_reset_at: Optional[datetime] = None


class RolloverResult(BaseModel):
    performed: bool
    state: RolloverState
    history: Optional[MinisteringHistory] = None
    previous_percentage: Optional[int] = None
    companionships: List[Companionship] = Field(default_factory=list)


class MigrationResult(BaseModel):
    success: bool
    total_members: int
    processed_members: int
    synced_members: int
    failed_members: List[FailedMemberUpdate] = Field(default_factory=list)
    duration_seconds: float = 0.0


class UrgentFamily(BaseModel):
    """Familia marcada como urgente junto con sus ministrantes."""
    companionship_id: str
    companions: List[str]
    family: Family


class MinisteringStats(BaseModel):
    """Indicadores de la página de ministración."""
    total_companionships: int
    total_families: int
    visited_families: int
    completion: int
    up_to_date_companionships: int
    urgent_families: int
    previous_percentage: Optional[int] = None
    delta_vs_previous: Optional[int] = None
