"""Errores de dominio del motor de ministración."""

from __future__ import annotations

from typing import Optional


class MinisteringError(Exception):
    """Error base para operaciones de ministración."""

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class CompanionshipNotFoundError(MinisteringError):
    def __init__(self, companionship_id: str) -> None:
        super().__init__(
            f"Compañerismo no encontrado: {companionship_id}",
            error_code="companionship_not_found",
        )
        self.companionship_id = companionship_id


class FamilyNotFoundError(MinisteringError):
    def __init__(self, companionship_id: str, family_name: str) -> None:
        super().__init__(
            f"La familia '{family_name}' no pertenece al compañerismo {companionship_id}",
            error_code="family_not_found",
        )
        self.companionship_id = companionship_id
        self.family_name = family_name


class DistrictNotFoundError(MinisteringError):
    def __init__(self, district_id: str) -> None:
        super().__init__(f"Distrito no encontrado: {district_id}", error_code="district_not_found")
        self.district_id = district_id


class MemberNotFoundError(MinisteringError):
    def __init__(self, member_id: str) -> None:
        super().__init__(f"Miembro no encontrado: {member_id}", error_code="member_not_found")
        self.member_id = member_id


class RolloverError(MinisteringError):
    """Fallo durante el reinicio mensual; el marcador no se avanza."""


__all__ = [
    "CompanionshipNotFoundError",
    "DistrictNotFoundError",
    "FamilyNotFoundError",
    "MemberNotFoundError",
    "MinisteringError",
    "RolloverError",
]
