"""Almacenamiento clave-valor local para el marcador del reinicio mensual."""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

import structlog

logger = structlog.get_logger("rollover")


class KeyValueStorage(ABC):
    """Interfaz mínima ``getItem``/``setItem``."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove_item(self, key: str) -> None:
        raise NotImplementedError


class InMemoryKeyValueStorage(KeyValueStorage):
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class JsonFileKeyValueStorage(KeyValueStorage):
    """Persistencia ligera en un archivo JSON (``{"items": {...}}``)."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "estado_local_corrupto",
                etapa="rollover_estado",
                ruta=str(self.path),
                error_code="state_file_corrupt",
            )
            return {}
        items = data.get("items", {}) if isinstance(data, dict) else {}
        return {str(key): str(value) for key, value in items.items()}

    def _write(self, items: Dict[str, str]) -> None:
        payload = {"items": items, "updated_at": datetime.now(timezone.utc).isoformat()}
        self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            items = self._read()
            items[key] = value
            self._write(items)

    def remove_item(self, key: str) -> None:
        with self._lock:
            items = self._read()
            if key not in items:
                return
            items.pop(key)
            if items:
                self._write(items)
            else:
                self.path.unlink(missing_ok=True)


__all__ = [
    "InMemoryKeyValueStorage",
    "JsonFileKeyValueStorage",
    "KeyValueStorage",
]
