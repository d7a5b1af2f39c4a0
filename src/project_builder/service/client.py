"""Cliente HTTP para el servicio de IA / ejecución de código."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import get_config
from ..core.resources import ExecutionResult

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Fallo de transporte o respuesta inválida del servicio."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class StartResponse:
    """Respuesta de /start_project."""

    session_id: str
    payload: Any  # texto JSON generado por el modelo


@dataclass
class NextStepResponse:
    """Respuesta de /next_step."""

    payload: Any
    session_id: str | None = None  # eco opcional del servicio


class BuilderClient:
    """Cliente para la API del servicio de proyectos guiados."""

    def __init__(
        self,
        host: str | None = None,
        timeout: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Inicializar cliente."""
        config = get_config()
        self.host = (host or config.service_url).rstrip("/")
        self.timeout = timeout or config.service_timeout
        self.client = http_client or httpx.AsyncClient(timeout=self.timeout)

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        """POST JSON y devolver el cuerpo decodificado."""
        url = f"{self.host}{path}"
        logger.debug("POST %s", url)
        try:
            response = await self.client.post(url, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            detail = self._error_detail(e.response)
            raise ServiceError(
                f"{path} respondió {e.response.status_code}: {detail}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ServiceError(f"Error de conexión con {path}: {e}") from e
        except ValueError as e:
            raise ServiceError(f"Respuesta de {path} no es JSON válido") from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(data, dict):
            return str(data.get("detail") or data.get("error") or data)
        return str(data)

    @staticmethod
    def _require_object(data: Any, path: str) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise ServiceError(f"Respuesta de {path} con formato inesperado")
        if data.get("error"):
            raise ServiceError(f"{path}: {data['error']}")
        return data

    async def check_connection(self) -> dict[str, Any]:
        """Verificar conexión con el servicio."""
        try:
            response = await self.client.get(f"{self.host}/")
            response.raise_for_status()
            return {"ok": True}
        except httpx.HTTPError as e:
            return {"ok": False, "error": str(e)}

    async def start_project(
        self,
        project_type: str,
        expertise_level: str,
        project_idea: str | None = None,
    ) -> StartResponse:
        """Crear sesión y obtener el plan inicial del proyecto."""
        payload: dict[str, Any] = {
            "project_type": project_type,
            "expertise_level": expertise_level,
        }
        if project_idea:
            payload["project_idea"] = project_idea

        data = self._require_object(await self._post("/start_project", payload), "/start_project")
        session_id = data.get("session_id")
        if not session_id:
            raise ServiceError("/start_project no devolvió session_id")
        return StartResponse(session_id=str(session_id), payload=data.get("response"))

    async def next_step(
        self,
        session_id: str,
        project_type: str,
        expertise_level: str,
        project_idea: str,
        current_step: int,
        user_code: str,
    ) -> NextStepResponse:
        """Pedir el siguiente paso enviando el código actual."""
        data = self._require_object(
            await self._post(
                "/next_step",
                {
                    "project_type": project_type,
                    "expertise_level": expertise_level,
                    "project_idea": project_idea,
                    "current_step": current_step,
                    "user_code": user_code,
                    "session_id": session_id,
                },
            ),
            "/next_step",
        )
        echoed = data.get("session_id")
        return NextStepResponse(
            payload=data.get("response", data),
            session_id=str(echoed) if echoed else None,
        )

    async def get_step_questions(self, session_id: str, step_number: int) -> Any:
        """Obtener las preguntas de verificación del paso."""
        data = await self._post(
            "/get_step_questions",
            {"session_id": session_id, "step_number": step_number},
        )
        if isinstance(data, dict) and data.get("error"):
            raise ServiceError(f"/get_step_questions: {data['error']}")
        return data

    async def verify_step_completion(
        self,
        session_id: str,
        step_number: int,
        user_answers: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Enviar respuestas para corrección."""
        return self._require_object(
            await self._post(
                "/verify_step_completion",
                {"session_id": session_id, "step_number": step_number, "user_answers": user_answers},
            ),
            "/verify_step_completion",
        )

    async def ask_question(
        self,
        session_id: str,
        project_type: str,
        question: str,
        code: str,
    ) -> str:
        """Pregunta libre sobre el código actual."""
        data = self._require_object(
            await self._post(
                "/ask_question",
                {
                    "question": question,
                    "code": code,
                    "project_type": project_type,
                    "session_id": session_id,
                },
            ),
            "/ask_question",
        )
        answer = data.get("response")
        if not isinstance(answer, str):
            raise ServiceError("/ask_question no devolvió texto")
        return answer

    async def execute(self, code: str, language: str) -> ExecutionResult:
        """Ejecutar código o arrancar una app de larga duración."""
        data = self._require_object(
            await self._post("/execute", {"code": code, "language": language}),
            "/execute",
        )
        return ExecutionResult.from_dict(data)

    async def stop_execution(self, execution_id: str) -> None:
        """Detener un proceso de preview."""
        await self._post("/terminate_streamlit", {"execution_id": execution_id})

    async def algorithm_designer(
        self,
        message: str,
        conversation_history: list[dict[str, str]],
        project_description: str | None = None,
        request_final: bool = False,
    ) -> dict[str, Any]:
        """Turno de conversación con el diseñador de algoritmos."""
        payload: dict[str, Any] = {
            "message": message,
            "conversation_history": conversation_history,
            "request_final": request_final,
        }
        if project_description:
            payload["project_description"] = project_description
        return self._require_object(
            await self._post("/api/algorithm_designer", payload),
            "/api/algorithm_designer",
        )

    async def close(self) -> None:
        """Cerrar cliente HTTP."""
        await self.client.aclose()
