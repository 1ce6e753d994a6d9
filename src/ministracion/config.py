"""
Configuración del servicio de Ministración del Quórum
"""

import logging.config
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent.parent
ENV_PATH = PROJECT_ROOT / ".env"

# Logger de servicio -> archivo propio dentro del directorio de logs.
# ``None`` significa "usar log_file_path tal cual".
SERVICE_LOG_FILES: Dict[str, Optional[str]] = {
    "app": "application.log",
    "ministering": None,
    "reverse_sync": "reverse_sync.log",
    "rollover": "rollover.log",
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
APP_ENVS = ("development", "staging", "production")


class Settings(BaseSettings):
    """Configuración de la aplicación"""

    app_env: str = "development"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = True
    enable_swagger: bool = True

    # Almacén documental: memory | sqlalchemy | firestore
    document_store_provider: str = "memory"
    database_url: Optional[str] = None
    firebase_credentials_path: Optional[str] = None
    firebase_project_id: Optional[str] = None

    # Reinicio mensual (marcador local por dispositivo)
    rollover_interval_days: int = 30
    rollover_state_path: str = str(PROJECT_ROOT / "data" / "state" / "rollover_state.json")
    rollover_state_key: str = "ministeringLastReset"

    default_district_count: int = 3
    district_name_template: str = "Distrito {number}"
    family_name_prefix: str = "Familia "
    family_name_prefixes: List[str] = Field(default_factory=lambda: ["Familia ", "Family "])

    log_file_path: str = str(PROJECT_ROOT / "logs" / "ministering.log")
    log_backup_count: int = 30  # días, con rotación a medianoche

    class Config:
        env_file = str(ENV_PATH)
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @field_validator('log_level')
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f'log_level debe ser uno de: {", ".join(LOG_LEVELS)}')
        return level

    @field_validator('app_env')
    def validate_app_env(cls, v: str) -> str:
        env = v.lower()
        if env not in APP_ENVS:
            raise ValueError(f'app_env debe ser uno de: {", ".join(APP_ENVS)}')
        return env

    @field_validator('rollover_interval_days', 'default_district_count')
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError('El valor debe ser un entero positivo')
        return v

    @field_validator('district_name_template')
    def validate_district_template(cls, v: str) -> str:
        if "{number}" not in v:
            raise ValueError('district_name_template debe incluir {number}')
        return v

    def model_post_init(self, __context: Any) -> None:  # noqa: D401
        """Resuelve contra la raíz del proyecto las rutas relativas del .env."""
        for field_name in ('firebase_credentials_path', 'rollover_state_path', 'log_file_path'):
            value = getattr(self, field_name)
            if value and not Path(value).is_absolute():
                object.__setattr__(self, field_name, str(PROJECT_ROOT / value))


def get_settings() -> Settings:
    """Obtener configuración de la aplicación"""
    return Settings()


def _pre_chain() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", key="timestamp_utc"),
    ]


def _service_file_handler(name: str, path: Path, backup_count: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "json",
        "filename": str(path),
        "when": "midnight",
        "utc": True,
        "backupCount": backup_count,
        "encoding": "utf-8",
        "filters": [name],
    }


def configure_logging(settings: Settings) -> None:
    """Configura structlog con salida JSON a consola y un archivo por servicio.

    Cada logger de ``SERVICE_LOG_FILES`` escribe en su archivo y además
    propaga a la raíz, que imprime en stdout.
    """

    main_log = Path(settings.log_file_path)
    main_log.parent.mkdir(parents=True, exist_ok=True)

    structlog.contextvars.clear_contextvars()
    structlog.configure(
        processors=_pre_chain() + [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: Dict[str, Any] = {
        "console": {"class": "logging.StreamHandler", "formatter": "json", "stream": "ext://sys.stdout"},
    }
    loggers: Dict[str, Any] = {}
    for name, file_name in SERVICE_LOG_FILES.items():
        path = main_log if file_name is None else main_log.parent / file_name
        handlers[f"{name}_file"] = _service_file_handler(name, path, settings.log_backup_count)
        loggers[name] = {"handlers": [f"{name}_file"], "level": settings.log_level, "propagate": True}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processor": structlog.processors.JSONRenderer(),
                    "foreign_pre_chain": _pre_chain(),
                },
            },
            "filters": {name: {"()": "logging.Filter", "name": name} for name in SERVICE_LOG_FILES},
            "handlers": handlers,
            "loggers": loggers,
            "root": {"handlers": ["console"], "level": settings.log_level},
        }
    )
