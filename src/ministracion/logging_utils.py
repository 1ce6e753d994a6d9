"""Contexto de logging compartido por los servicios de ministración.

Cada evento lleva los mismos campos clave (``etapa``, IDs de compañerismo,
distrito y miembro, contadores y ``error_code``) para poder filtrar los
archivos JSON por operación. Los campos sin valor no se emiten.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, Optional

import structlog

MANDATORY_FIELDS: Iterable[str] = (
    "request_id",
    "etapa",
    "companionship_id",
    "district_id",
    "member_id",
    "records_processed",
    "records_skipped",
    "error_code",
)


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


def ensure_log_context(
    base: Optional[Dict[str, Any]] = None,
    *,
    etapa: Optional[str] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """Copia ``base`` y completa los campos obligatorios con ``None``.

    ``etapa`` y los ``overrides`` reemplazan lo que traiga ``base``; el
    diccionario original no se modifica.
    """

    context = dict.fromkeys(MANDATORY_FIELDS)
    context.update(base or {})
    if etapa is not None:
        context["etapa"] = etapa
    context.update(overrides)
    return context


def bind_log_context(
    logger: structlog.stdlib.BoundLogger,
    context: Optional[Dict[str, Any]],
    **extra: Any,
) -> structlog.stdlib.BoundLogger:
    """Une ``context`` y ``extra`` al logger omitiendo valores ``None``."""

    values = {**(context or {}), **extra}
    present = {key: value for key, value in values.items() if value is not None}
    return logger.bind(**present) if present else logger


__all__ = ["MANDATORY_FIELDS", "bind_log_context", "ensure_log_context", "new_request_id"]
