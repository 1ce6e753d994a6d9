"""Acceso genérico a la base documental (Firestore o equivalentes).

Define el contrato mínimo que consume el motor de ministración
(``query``/``get``/``set``/``update``/``delete``/``batch``) y tres
implementaciones: memoria (pruebas y desarrollo), SQLAlchemy (despliegues
autoalojados) y Firestore mediante ``firebase_admin``.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar
from uuid import uuid4

import structlog
from sqlalchemy import JSON, Column, DateTime, MetaData, String, Table, create_engine, delete, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

logger = structlog.get_logger("ministering")

T = TypeVar("T")
Filter = Tuple[str, str, Any]

SUPPORTED_OPERATORS = ("==", "in", "array_contains")
WRITE_TYPES = ("set", "update", "delete")


class _ServerTimestamp:
    """Marcador que el almacén resuelve con la hora del servidor al escribir."""

    _instance: Optional["_ServerTimestamp"] = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class DocumentStoreError(Exception):
    """Fallo de infraestructura del almacén documental."""


class DocumentNotFoundError(DocumentStoreError):
    """El documento objetivo de un ``update`` no existe."""

    def __init__(self, collection: str, document_id: str) -> None:
        super().__init__(f"Documento no encontrado: {collection}/{document_id}")
        self.collection = collection
        self.document_id = document_id


@dataclass(frozen=True)
class Document:
    id: str
    data: Dict[str, Any]


@dataclass(frozen=True)
class WriteOperation:
    """Operación individual dentro de una escritura por lotes."""

    type: str
    collection: str
    document_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False

    def __post_init__(self) -> None:
        if self.type not in WRITE_TYPES:
            raise ValueError(f"Tipo de operación no soportado: {self.type}")

    @classmethod
    def set(cls, collection: str, document_id: str, data: Dict[str, Any], *, merge: bool = False) -> "WriteOperation":
        return cls("set", collection, document_id, data, merge)

    @classmethod
    def update(cls, collection: str, document_id: str, data: Dict[str, Any]) -> "WriteOperation":
        return cls("update", collection, document_id, data)

    @classmethod
    def delete(cls, collection: str, document_id: str) -> "WriteOperation":
        return cls("delete", collection, document_id)


def _validate_filters(filters: Optional[Sequence[Filter]]) -> List[Filter]:
    validated = list(filters or [])
    for field_name, op, _ in validated:
        if op not in SUPPORTED_OPERATORS:
            raise ValueError(f"Operador no soportado en filtro sobre '{field_name}': {op}")
    return validated


def _matches(data: Dict[str, Any], filters: Sequence[Filter]) -> bool:
    for field_name, op, value in filters:
        current = data.get(field_name)
        if op == "==" and current != value:
            return False
        if op == "in" and current not in value:
            return False
        if op == "array_contains" and (not isinstance(current, list) or value not in current):
            return False
    return True


def _sort_documents(documents: List[Document], order_by: Optional[str]) -> List[Document]:
    if not order_by:
        return documents
    # Los documentos sin el campo quedan al final
    return sorted(documents, key=lambda doc: (doc.data.get(order_by) is None, doc.data.get(order_by) or ""))


def _resolve_sentinels(data: Dict[str, Any], resolved: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in data.items():
        if value is SERVER_TIMESTAMP:
            result[key] = resolved
        elif isinstance(value, dict):
            result[key] = _resolve_sentinels(value, resolved)
        else:
            result[key] = value
    return result


class DocumentStore(ABC):
    """Contrato del almacén documental consumido por los servicios."""

    supports_transactions: bool = False

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        order_by: Optional[str] = None,
    ) -> List[Document]:
        raise NotImplementedError

    @abstractmethod
    def get_document(self, collection: str, document_id: str) -> Optional[Document]:
        raise NotImplementedError

    @abstractmethod
    def set_document(self, collection: str, document_id: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_document(self, collection: str, document_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def batch_write(self, operations: Sequence[WriteOperation]) -> None:
        """Aplica todas las operaciones o ninguna."""
        raise NotImplementedError

    def server_timestamp(self) -> Any:
        return SERVER_TIMESTAMP

    def new_document_id(self, collection: str) -> str:
        return uuid4().hex[:20]

    def add_document(self, collection: str, data: Dict[str, Any]) -> str:
        document_id = self.new_document_id(collection)
        self.set_document(collection, document_id, data)
        return document_id

    def run_in_transaction(self, callback: Callable[["DocumentStore"], T]) -> T:
        """Ejecuta ``callback`` de forma atómica cuando el almacén lo permite.

        La implementación base no ofrece aislamiento: entre lecturas y
        escrituras del callback otro cliente puede confirmar cambios.
        """
        return callback(self)


class InMemoryDocumentStore(DocumentStore):
    """Almacén en memoria con copias profundas y bloqueo global."""

    supports_transactions = True

    def __init__(self, initial: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = copy.deepcopy(initial or {})
        self._lock = threading.RLock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def query(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        order_by: Optional[str] = None,
    ) -> List[Document]:
        validated = _validate_filters(filters)
        with self._lock:
            documents = [
                Document(doc_id, copy.deepcopy(data))
                for doc_id, data in self._collections.get(collection, {}).items()
                if _matches(data, validated)
            ]
        return _sort_documents(documents, order_by)

    def get_document(self, collection: str, document_id: str) -> Optional[Document]:
        with self._lock:
            data = self._collections.get(collection, {}).get(document_id)
            if data is None:
                return None
            return Document(document_id, copy.deepcopy(data))

    def set_document(self, collection: str, document_id: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        self.batch_write([WriteOperation.set(collection, document_id, data, merge=merge)])

    def update_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        self.batch_write([WriteOperation.update(collection, document_id, data)])

    def delete_document(self, collection: str, document_id: str) -> None:
        self.batch_write([WriteOperation.delete(collection, document_id)])

    def batch_write(self, operations: Sequence[WriteOperation]) -> None:
        with self._lock:
            staged = copy.deepcopy(self._collections)
            now = self._now()
            for operation in operations:
                self._apply(staged, operation, now)
            self._collections = staged

    def run_in_transaction(self, callback: Callable[[DocumentStore], T]) -> T:
        with self._lock:
            snapshot = copy.deepcopy(self._collections)
            try:
                return callback(self)
            except Exception:
                self._collections = snapshot
                raise

    @staticmethod
    def _apply(
        collections: Dict[str, Dict[str, Dict[str, Any]]],
        operation: WriteOperation,
        now: datetime,
    ) -> None:
        documents = collections.setdefault(operation.collection, {})
        data = _resolve_sentinels(copy.deepcopy(operation.data), now)

        if operation.type == "delete":
            documents.pop(operation.document_id, None)
        elif operation.type == "update":
            existing = documents.get(operation.document_id)
            if existing is None:
                raise DocumentNotFoundError(operation.collection, operation.document_id)
            existing.update(data)
        elif operation.merge and operation.document_id in documents:
            documents[operation.document_id].update(data)
        else:
            documents[operation.document_id] = data


metadata = MetaData()

documentos_table = Table(
    "documentos",
    metadata,
    Column("collection", String(255), primary_key=True),
    Column("id", String(255), primary_key=True),
    Column("data", JSON, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


class SQLAlchemyDocumentStore(DocumentStore):
    """Almacén documental sobre una tabla relacional con columna JSON."""

    supports_transactions = True

    def __init__(self, database_url: Optional[str] = None, *, engine: Optional[Engine] = None) -> None:
        if engine is None:
            if not database_url:
                raise DocumentStoreError("DATABASE_URL no configurada para el almacén SQLAlchemy")
            engine = create_engine(database_url, pool_pre_ping=True, pool_recycle=3600)
        self.engine = engine
        metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._local = threading.local()
        self._transaction_lock = threading.RLock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        active = getattr(self._local, "session", None)
        if active is not None:
            yield active
            return

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise DocumentStoreError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _fetch(self, session: Session, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        row = session.execute(
            select(documentos_table.c.data).where(
                documentos_table.c.collection == collection,
                documentos_table.c.id == document_id,
            )
        ).first()
        return dict(row[0]) if row else None

    def query(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        order_by: Optional[str] = None,
    ) -> List[Document]:
        validated = _validate_filters(filters)
        with self._session() as session:
            rows = session.execute(
                select(documentos_table.c.id, documentos_table.c.data).where(documentos_table.c.collection == collection)
            ).all()
        documents = [Document(row[0], dict(row[1])) for row in rows if _matches(row[1], validated)]
        return _sort_documents(documents, order_by)

    def get_document(self, collection: str, document_id: str) -> Optional[Document]:
        with self._session() as session:
            data = self._fetch(session, collection, document_id)
        return Document(document_id, data) if data is not None else None

    def set_document(self, collection: str, document_id: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        self.batch_write([WriteOperation.set(collection, document_id, data, merge=merge)])

    def update_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        self.batch_write([WriteOperation.update(collection, document_id, data)])

    def delete_document(self, collection: str, document_id: str) -> None:
        self.batch_write([WriteOperation.delete(collection, document_id)])

    def batch_write(self, operations: Sequence[WriteOperation]) -> None:
        with self._session() as session:
            for operation in operations:
                self._apply(session, operation)

    def run_in_transaction(self, callback: Callable[[DocumentStore], T]) -> T:
        with self._transaction_lock:
            session = self.session_factory()
            self._local.session = session
            try:
                result = callback(self)
                session.commit()
                return result
            except SQLAlchemyError as exc:
                session.rollback()
                raise DocumentStoreError(str(exc)) from exc
            except Exception:
                session.rollback()
                raise
            finally:
                self._local.session = None
                session.close()

    def _apply(self, session: Session, operation: WriteOperation) -> None:
        now = datetime.now(timezone.utc)
        key = (
            documentos_table.c.collection == operation.collection,
            documentos_table.c.id == operation.document_id,
        )

        if operation.type == "delete":
            session.execute(delete(documentos_table).where(*key))
            return

        existing = self._fetch(session, operation.collection, operation.document_id)
        data = _resolve_sentinels(operation.data, now.isoformat())

        if operation.type == "update":
            if existing is None:
                raise DocumentNotFoundError(operation.collection, operation.document_id)
            data = {**existing, **data}
        elif operation.merge and existing is not None:
            data = {**existing, **data}

        if existing is None:
            session.execute(
                insert(documentos_table).values(
                    collection=operation.collection,
                    id=operation.document_id,
                    data=data,
                    updated_at=now,
                )
            )
        else:
            session.execute(update(documentos_table).where(*key).values(data=data, updated_at=now))


class FirestoreDocumentStore(DocumentStore):
    """Adaptador sobre ``firebase_admin.firestore``.

    ``run_in_transaction`` usa la transacción nativa: mientras el callback
    corre, las lecturas y escrituras del hilo pasan por el objeto
    transacción. Firestore exige que todas las lecturas ocurran antes de
    la primera escritura y puede reintentar el callback por contención.
    """

    supports_transactions = True

    def __init__(
        self,
        *,
        credentials_path: Optional[str] = None,
        project_id: Optional[str] = None,
        client: Any = None,
    ) -> None:
        import firebase_admin
        from firebase_admin import credentials, firestore

        self._firestore = firestore
        if client is None:
            if not firebase_admin._apps:
                cred = credentials.Certificate(credentials_path) if credentials_path else credentials.ApplicationDefault()
                options = {"projectId": project_id} if project_id else None
                firebase_admin.initialize_app(cred, options)
            client = firestore.client()
        self._client = client
        self._local = threading.local()

    @property
    def _transaction(self) -> Any:
        return getattr(self._local, "transaction", None)

    def _convert(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return _resolve_sentinels(data, self._firestore.SERVER_TIMESTAMP)

    @contextmanager
    def _guard(self, operation: str, collection: str, document_id: Optional[str] = None) -> Iterator[None]:
        from google.api_core import exceptions as google_exceptions

        try:
            yield
        except google_exceptions.NotFound as exc:
            raise DocumentNotFoundError(collection, document_id or "") from exc
        except google_exceptions.GoogleAPIError as exc:
            logger.error(
                "❌ Error en Firestore",
                etapa="firestore",
                operacion=operation,
                coleccion=collection,
                document_id=document_id,
                error=str(exc),
                error_code="firestore_error",
            )
            raise DocumentStoreError(str(exc)) from exc

    def query(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]] = None,
        order_by: Optional[str] = None,
    ) -> List[Document]:
        from google.cloud.firestore_v1.base_query import FieldFilter

        reference: Any = self._client.collection(collection)
        for field_name, op, value in _validate_filters(filters):
            reference = reference.where(filter=FieldFilter(field_name, op, value))
        if order_by:
            reference = reference.order_by(order_by)
        with self._guard("query", collection):
            snapshots = reference.stream(transaction=self._transaction) if self._transaction else reference.stream()
            return [Document(snapshot.id, snapshot.to_dict() or {}) for snapshot in snapshots]

    def get_document(self, collection: str, document_id: str) -> Optional[Document]:
        with self._guard("get", collection, document_id):
            reference = self._client.collection(collection).document(document_id)
            snapshot = reference.get(transaction=self._transaction) if self._transaction else reference.get()
        if not snapshot.exists:
            return None
        return Document(snapshot.id, snapshot.to_dict() or {})

    def set_document(self, collection: str, document_id: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        if self._transaction:
            self.batch_write([WriteOperation.set(collection, document_id, data, merge=merge)])
            return
        with self._guard("set", collection, document_id):
            self._client.collection(collection).document(document_id).set(self._convert(data), merge=merge)

    def update_document(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        if self._transaction:
            self.batch_write([WriteOperation.update(collection, document_id, data)])
            return
        with self._guard("update", collection, document_id):
            self._client.collection(collection).document(document_id).update(self._convert(data))

    def delete_document(self, collection: str, document_id: str) -> None:
        if self._transaction:
            self.batch_write([WriteOperation.delete(collection, document_id)])
            return
        with self._guard("delete", collection, document_id):
            self._client.collection(collection).document(document_id).delete()

    def batch_write(self, operations: Sequence[WriteOperation]) -> None:
        # Dentro de una transacción las escrituras se acumulan y se confirman con ella.
        batch = self._transaction or self._client.batch()
        for operation in operations:
            reference = self._client.collection(operation.collection).document(operation.document_id)
            if operation.type == "delete":
                batch.delete(reference)
            elif operation.type == "update":
                batch.update(reference, self._convert(operation.data))
            else:
                batch.set(reference, self._convert(operation.data), merge=operation.merge)
        if self._transaction:
            return
        with self._guard("batch", operations[0].collection if operations else ""):
            batch.commit()

    def run_in_transaction(self, callback: Callable[[DocumentStore], T]) -> T:
        if self._transaction:
            return callback(self)

        @self._firestore.transactional
        def _run(transaction: Any) -> T:
            self._local.transaction = transaction
            try:
                return callback(self)
            finally:
                self._local.transaction = None

        with self._guard("transaction", ""):
            return _run(self._client.transaction())

    def server_timestamp(self) -> Any:
        return self._firestore.SERVER_TIMESTAMP

    def new_document_id(self, collection: str) -> str:
        return self._client.collection(collection).document().id


def create_document_store(settings: Any) -> DocumentStore:
    """Crear el almacén documental según la configuración."""

    provider = getattr(settings, "document_store_provider", "memory") or "memory"
    provider = provider.lower()

    if provider == "sqlalchemy":
        return SQLAlchemyDocumentStore(getattr(settings, "database_url", None))

    if provider == "firestore":
        return FirestoreDocumentStore(
            credentials_path=getattr(settings, "firebase_credentials_path", None),
            project_id=getattr(settings, "firebase_project_id", None),
        )

    if provider != "memory":
        logger.warning(
            "document_store_provider_desconocido",
            etapa="configuracion",
            provider=provider,
            accion="se usa memoria",
        )
    return InMemoryDocumentStore()


__all__ = [
    "Document",
    "DocumentNotFoundError",
    "DocumentStore",
    "DocumentStoreError",
    "FirestoreDocumentStore",
    "InMemoryDocumentStore",
    "SERVER_TIMESTAMP",
    "SQLAlchemyDocumentStore",
    "WriteOperation",
    "create_document_store",
    "documentos_table",
]
