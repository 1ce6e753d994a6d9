"""Notificaciones internas (documentos en ``c_notifications``)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import structlog

from ministracion.services import collections
from ministracion.services.document_store import DocumentStore, WriteOperation

logger = structlog.get_logger("ministering")


@dataclass
class NotificationPayload:
    title: str
    body: str
    context_type: Optional[str] = None
    context_id: Optional[str] = None
    action_url: Optional[str] = None
    action_type: str = "navigate"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def urgent_family_notification(family_name: str, observation: str, companionship_id: str) -> NotificationPayload:
    return NotificationPayload(
        title="Necesidad Urgente de Familia",
        body=f"La familia {family_name} tiene una necesidad urgente: {observation}",
        context_type="urgent_family",
        context_id=companionship_id,
        action_url="/ministering/urgent",
    )


class NotificationDispatcher(ABC):
    """Interfaz para el envío de notificaciones a todos los usuarios."""

    @abstractmethod
    def notify_all(self, payload: NotificationPayload) -> int:
        """Devuelve el número de notificaciones creadas."""
        raise NotImplementedError


class NullNotificationDispatcher(NotificationDispatcher):
    def notify_all(self, payload: NotificationPayload) -> int:
        logger.debug("notificacion_omitida", etapa="notificaciones", titulo=payload.title)
        return 0


class DocumentStoreNotificationDispatcher(NotificationDispatcher):
    """Crea un documento por usuario de ``c_users`` en un solo lote."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def _user_ids(self) -> List[str]:
        return [document.id for document in self.store.query(collections.USERS)]

    def notify_all(self, payload: NotificationPayload) -> int:
        user_ids = self._user_ids()
        if not user_ids:
            return 0

        operations = []
        for user_id in user_ids:
            data: Dict[str, Any] = {
                "userId": user_id,
                "title": payload.title,
                "body": payload.body,
                "createdAt": self.store.server_timestamp(),
                "isRead": False,
            }
            if payload.context_type:
                data["contextType"] = payload.context_type
            if payload.context_id:
                data["contextId"] = payload.context_id
            if payload.action_url:
                data["actionUrl"] = payload.action_url
                data["actionType"] = payload.action_type
            operations.append(
                WriteOperation.set(
                    collections.NOTIFICATIONS,
                    self.store.new_document_id(collections.NOTIFICATIONS),
                    data,
                )
            )

        self.store.batch_write(operations)
        logger.info(
            "🔔 Notificaciones creadas",
            etapa="notificaciones",
            contexto=payload.context_type,
            records_processed=len(operations),
        )
        return len(operations)


__all__ = [
    "DocumentStoreNotificationDispatcher",
    "NotificationDispatcher",
    "NotificationPayload",
    "NullNotificationDispatcher",
    "urgent_family_notification",
]
