"""Servicios del motor de ministración."""

from ministracion.services.document_store import (  # noqa: F401
    Document,
    DocumentNotFoundError,
    DocumentStore,
    DocumentStoreError,
    FirestoreDocumentStore,
    InMemoryDocumentStore,
    SQLAlchemyDocumentStore,
    WriteOperation,
    create_document_store,
)
from ministracion.services.errors import (  # noqa: F401
    CompanionshipNotFoundError,
    DistrictNotFoundError,
    FamilyNotFoundError,
    MemberNotFoundError,
    MinisteringError,
    RolloverError,
)
from ministracion.services.local_storage import (  # noqa: F401
    InMemoryKeyValueStorage,
    JsonFileKeyValueStorage,
    KeyValueStorage,
)
from ministracion.services.validators import CompanionshipValidator, validate_companionship_data  # noqa: F401
from ministracion.services.reverse_sync import ReverseSyncEngine, calculate_updated_teachers  # noqa: F401
from ministracion.services.district_service import DistrictService  # noqa: F401
from ministracion.services.rollover_service import (  # noqa: F401
    RolloverService,
    RolloverStateRepository,
    calculate_overall_completion,
    get_companionship_completion,
)
from ministracion.services.notifications import (  # noqa: F401
    DocumentStoreNotificationDispatcher,
    NotificationDispatcher,
    NullNotificationDispatcher,
)
from ministracion.services.ministering_sync import MinisteringSyncService  # noqa: F401
from ministracion.services.companionship_service import CompanionshipService  # noqa: F401
