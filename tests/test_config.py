"""Pruebas de la configuración y del arranque de logging."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
import structlog
from pydantic import ValidationError

from ministracion.config import PROJECT_ROOT, Settings, configure_logging


def test_settings_normalizes_level_and_relative_paths(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("ROLLOVER_STATE_PATH", "data/estado.json")

    settings = Settings()

    assert settings.log_level == "DEBUG"
    assert settings.rollover_state_path == str(PROJECT_ROOT / "data" / "estado.json")
    assert settings.rollover_state_key == "ministeringLastReset"


@pytest.mark.parametrize(
    "field, value",
    [
        ("log_level", "VERBOSE"),
        ("app_env", "qa"),
        ("rollover_interval_days", 0),
        ("district_name_template", "Distrito"),
    ],
)
def test_settings_rejects_invalid_values(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_configure_logging_writes_service_files(tmp_path):
    settings = Settings(log_file_path=str(tmp_path / "logs" / "ministering.log"), log_level="INFO")

    configure_logging(settings)
    structlog.get_logger("rollover").info("evento_de_prueba", etapa="rollover_mensual")
    for handler in logging.getLogger("rollover").handlers:
        handler.flush()

    content = Path(tmp_path / "logs" / "rollover.log").read_text(encoding="utf-8")
    assert "evento_de_prueba" in content
    assert "timestamp_utc" in content
    assert not (tmp_path / "logs" / "reverse_sync.log").read_text(encoding="utf-8")

    for name in ("app", "ministering", "reverse_sync", "rollover"):
        for handler in list(logging.getLogger(name).handlers):
            handler.close()
            logging.getLogger(name).removeHandler(handler)
