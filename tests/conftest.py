"""Fixtures compartidas: configuración temporal y servicio falso."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from project_builder.config import Config, set_config
from project_builder.core.resources import ExecutionResult
from project_builder.service.client import NextStepResponse, StartResponse


def step_json(title: str, code: str | None = None, **extra: Any) -> str:
    """Texto JSON de un paso tal como lo genera el modelo."""
    data = {"title": title, "description": f"Descripción de {title}", **extra}
    if code is not None:
        data["code"] = code
    return json.dumps(data)


def project_json(first_step_code: str | None = None, total_steps: int = 3) -> str:
    return json.dumps({
        "project_title": "Todo App",
        "project_description": "Una lista de tareas",
        "total_steps": total_steps,
        "steps": [json.loads(step_json("Step 1: Setup", first_step_code))],
    })


# Forma en que el servicio devuelve las preguntas de un paso.
QUESTIONS = [
    {"question_id": "q1", "question_text": "¿Qué hace <div>?", "options": ["Bloque", "Enlace"], "correct_answer": "Bloque"},
    {"question_id": "q2", "question_text": "¿Qué es CSS?", "options": ["Estilos", "Datos"], "correct_answer": "Estilos"},
    {"question_id": "q3", "question_text": "¿Dónde va JS?", "options": ["<script>", "<style>"], "correct_answer": "<script>"},
]


class FakeService:
    """Sustituto en memoria de BuilderClient.

    Las colas ``next_steps``, ``gradings`` y ``executions`` se consumen en
    orden; un elemento que sea una excepción se lanza. ``hooks`` permite
    ejecutar código (p.ej. un reset) mientras una llamada está "en vuelo".
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.session_id = "s-1"
        self.start_payload: Any = project_json()
        self.start_error: Exception | None = None
        self.next_steps: list[Any] = []
        self.echo_session_id: str | None = None
        self.questions: Any = QUESTIONS
        self.gradings: list[Any] = []
        self.executions: list[Any] = []
        self.stop_error: Exception | None = None
        self.answer = "Usa un <ul> para la lista."
        self.designer_replies: list[Any] = []
        self.hooks: dict[str, Any] = {}
        self.closed = False

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def _call(self, name: str, **kwargs: Any) -> None:
        self.calls.append((name, kwargs))
        hook = self.hooks.pop(name, None)
        if hook is not None:
            await hook()

    @staticmethod
    def _pop(queue: list[Any]) -> Any:
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def start_project(self, project_type, expertise_level, project_idea=None):
        await self._call("start_project", project_type=project_type,
                         expertise_level=expertise_level, project_idea=project_idea)
        if self.start_error is not None:
            raise self.start_error
        return StartResponse(session_id=self.session_id, payload=self.start_payload)

    async def next_step(self, **kwargs):
        await self._call("next_step", **kwargs)
        payload = self._pop(self.next_steps)
        return NextStepResponse(payload=payload, session_id=self.echo_session_id)

    async def get_step_questions(self, session_id, step_number):
        await self._call("get_step_questions", session_id=session_id, step_number=step_number)
        if isinstance(self.questions, Exception):
            raise self.questions
        return self.questions

    async def verify_step_completion(self, session_id, step_number, user_answers):
        await self._call("verify_step_completion", session_id=session_id, step_number=step_number,
                         user_answers=user_answers)
        return self._pop(self.gradings)

    async def ask_question(self, session_id, project_type, question, code):
        await self._call("ask_question", session_id=session_id, project_type=project_type,
                         question=question, code=code)
        return self.answer

    async def execute(self, code, language):
        await self._call("execute", code=code, language=language)
        return self._pop(self.executions)

    async def stop_execution(self, execution_id):
        await self._call("stop_execution", execution_id=execution_id)
        if self.stop_error is not None:
            raise self.stop_error

    async def algorithm_designer(self, message, conversation_history,
                                 project_description=None, request_final=False):
        await self._call("algorithm_designer", message=message,
                         conversation_history=conversation_history,
                         project_description=project_description,
                         request_final=request_final)
        return self._pop(self.designer_replies)

    async def close(self) -> None:
        self.closed = True


def streamlit_execution(execution_id: str = "exec-1") -> ExecutionResult:
    return ExecutionResult(
        execution_id=execution_id,
        is_long_running=True,
        address=f"http://localhost:8501/{execution_id}",
    )


@pytest.fixture(autouse=True)
def config(tmp_path: Path) -> Config:
    """Configuración aislada en un directorio temporal."""
    cfg = Config(data_dir=tmp_path / "data", service_url="http://builder.test", advance_delay=0)
    set_config(cfg)
    return cfg


@pytest.fixture
def service() -> FakeService:
    return FakeService()
