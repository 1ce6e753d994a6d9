"""Nombres de colecciones de la base documental."""

COMPANIONSHIPS = "c_ministracion"
HISTORY = "c_ministracion_historial"
DISTRICTS = "c_ministracion_distritos"
MEMBERS = "c_miembros"
NOTIFICATIONS = "c_notifications"
USERS = "c_users"

__all__ = [
    "COMPANIONSHIPS",
    "DISTRICTS",
    "HISTORY",
    "MEMBERS",
    "NOTIFICATIONS",
    "USERS",
]
