"""Configuración global de la aplicación."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from platformdirs import user_data_dir


@dataclass(frozen=True)
class Config:
    """Configuración inmutable de la aplicación."""

    # Servicio de IA / ejecución
    service_url: str = "http://localhost:8000"
    service_timeout: int = 120

    # Sesión
    advance_delay: float = 2.0  # segundos para leer el feedback del quiz
    default_project_idea: str = "AI suggested project"

    # Editor
    editor: str = "nvim"

    # Logging
    log_level: str = "INFO"

    # Paths
    data_dir: Path = Path(user_data_dir("project-builder", "project-builder"))
    sessions_dir: Path = field(init=False)
    exports_dir: Path = field(init=False)

    # App
    app_name: str = "Project Builder"
    version: str = "0.1.0"

    def __post_init__(self) -> None:
        object.__setattr__(self, "sessions_dir", self.data_dir / "sessions")
        object.__setattr__(self, "exports_dir", self.data_dir / "exports")

    @classmethod
    def from_env(cls) -> Config:
        """Crear configuración desde variables de entorno."""
        data_dir = os.getenv("BUILDER_DATA_DIR")

        return cls(
            service_url=os.getenv("BUILDER_SERVICE_URL", "http://localhost:8000").rstrip("/"),
            service_timeout=int(os.getenv("BUILDER_TIMEOUT", "120")),
            advance_delay=float(os.getenv("BUILDER_ADVANCE_DELAY", "2.0")),
            editor=os.getenv("EDITOR", "nvim"),
            log_level=os.getenv("BUILDER_LOG_LEVEL", "INFO").upper(),
            data_dir=Path(data_dir) if data_dir else Path(user_data_dir("project-builder", "project-builder")),
        )

    def ensure_dirs(self) -> None:
        """Crear directorios necesarios si no existen."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.exports_dir.mkdir(parents=True, exist_ok=True)


# Instancia global
_config: Config | None = None


def get_config() -> Config:
    """Obtener instancia de configuración (singleton)."""
    global _config
    if _config is None:
        _config = Config.from_env()
        _config.ensure_dirs()
    return _config


def set_config(config: Config) -> None:
    """Establecer configuración (para tests)."""
    global _config
    _config = config
    _config.ensure_dirs()
