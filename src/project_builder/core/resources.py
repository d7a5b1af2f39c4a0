"""Ciclo de vida del proceso de preview asociado a una sesión."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..service.client import BuilderClient

logger = logging.getLogger(__name__)


class ResourceBusyError(Exception):
    """Ya hay un proceso vivo para esta sesión."""

    pass


@dataclass(frozen=True)
class PreviewRequest:
    """Código a ejecutar o servir."""

    code: str
    language: str  # python, html, css, javascript


@dataclass
class ExecutionResult:
    """Resultado de StartPreviewProcess."""

    execution_id: str | None = None
    is_long_running: bool = False
    address: str | None = None
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    startup_error: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionResult:
        """Crear desde la respuesta de /execute."""
        stdout = data.get("stdout") or ""
        stderr = data.get("stderr") or ""
        startup_error = None
        if data.get("streamlit_error") or data.get("startup_error"):
            startup_error = stderr or stdout or "Error desconocido arrancando la app"

        execution_id = data.get("execution_id")
        return cls(
            execution_id=str(execution_id) if execution_id else None,
            is_long_running=bool(data.get("is_streamlit") or data.get("is_long_running")),
            address=data.get("streamlit_url") or data.get("address"),
            stdout=stdout,
            stderr=stderr,
            exit_code=data.get("exit_code"),
            startup_error=startup_error,
        )

    @property
    def succeeded(self) -> bool:
        if self.startup_error:
            return False
        if self.is_long_running:
            return True
        return self.exit_code in (0, None)


@dataclass(frozen=True)
class ResourceHandle:
    """Proceso de larga duración vivo."""

    execution_id: str
    address: str | None
    language: str


class ResourceTracker:
    """Mantiene como máximo un proceso de preview vivo."""

    def __init__(self, client: BuilderClient) -> None:
        self.client = client
        self.handle: ResourceHandle | None = None

    @property
    def active_id(self) -> str | None:
        return self.handle.execution_id if self.handle else None

    async def acquire(self, request: PreviewRequest) -> ExecutionResult:
        """Ejecutar código; conservar el handle si queda un proceso vivo.

        Lanza ResourceBusyError si no se liberó el handle anterior.
        """
        if self.handle is not None:
            raise ResourceBusyError(
                f"Proceso {self.handle.execution_id} sigue activo; liberar antes de arrancar otro"
            )

        result = await self.client.execute(request.code, request.language)

        if result.is_long_running and result.execution_id and not result.startup_error:
            self.handle = ResourceHandle(
                execution_id=result.execution_id,
                address=result.address,
                language=request.language,
            )
            logger.info("Preview %s activo en %s", result.execution_id, result.address)
        return result

    async def release(self) -> bool:
        """Detener el proceso activo (best-effort, idempotente).

        Retorna True si había un handle. Los fallos se registran y nunca se
        propagan.
        """
        handle = self.handle
        if handle is None:
            return False

        # El handle queda vacío aunque falle la parada
        self.handle = None
        try:
            await self.client.stop_execution(handle.execution_id)
            logger.info("Preview %s detenido", handle.execution_id)
        except Exception as e:
            logger.warning("No se pudo detener el preview %s: %s", handle.execution_id, e)
        return True
