"""Interpretación de las respuestas del servicio de IA."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from ..core.state import CompletionSignal, GradingResult, Question, Step


class PayloadError(Exception):
    """La respuesta no tiene la estructura esperada."""

    pass


@dataclass
class ProjectPayload:
    """Datos iniciales del proyecto devueltos por StartSession."""

    title: str = ""
    description: str = ""
    total_steps: int | None = None
    steps: list[Step] = field(default_factory=list)


def extract_json(text: str) -> Any | None:
    """Extraer objeto JSON de texto generado por el modelo."""
    # Intentar parsear directamente
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        pass

    # Buscar bloque JSON en markdown
    json_pattern = r"```(?:json)?\s*(\{.*\}|\[.*\])\s*```"
    for match in re.findall(json_pattern, text, re.DOTALL):
        try:
            return json.loads(match)
        except json.JSONDecodeError:
            continue

    # Buscar JSON inline: del primer '{' al último '}'
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            pass

    return None


def _as_object(raw: Any, what: str) -> dict[str, Any]:
    data = extract_json(raw) if isinstance(raw, str) else raw
    if not isinstance(data, dict):
        raise PayloadError(f"No se pudo extraer un objeto JSON de la respuesta ({what})")
    return data


def _parse_step(data: Any) -> Step:
    if not isinstance(data, dict):
        raise PayloadError("El paso debe ser un objeto JSON")
    description = data.get("description")
    if not isinstance(description, str) or not description.strip():
        raise PayloadError("Campo requerido faltante: description")
    title = data.get("title", "")
    if not isinstance(title, str):
        raise PayloadError("El campo title debe ser texto")
    return Step.from_dict(data)


def parse_project_payload(raw: Any) -> ProjectPayload:
    """Interpretar la respuesta de StartSession."""
    data = _as_object(raw, "proyecto")

    total = data.get("total_steps")
    try:
        total_steps = int(total) if total is not None else None
    except (TypeError, ValueError):
        raise PayloadError(f"total_steps inválido: {total!r}")

    steps_data = data.get("steps") or []
    if not isinstance(steps_data, list):
        raise PayloadError("steps debe ser una lista")

    return ProjectPayload(
        title=data.get("project_title", ""),
        description=data.get("project_description", ""),
        total_steps=total_steps,
        steps=[_parse_step(s) for s in steps_data],
    )


def parse_step_payload(raw: Any) -> Step | CompletionSignal:
    """Interpretar la respuesta de NextStep: un paso o la señal de fin."""
    data = _as_object(raw, "paso")
    if data.get("completed") is True or data.get("project_completed") is True:
        return CompletionSignal(message=str(data.get("message", "")))
    return _parse_step(data)


def parse_questions(raw: Any) -> list[Question]:
    """Interpretar la lista de preguntas del quiz."""
    data = extract_json(raw) if isinstance(raw, str) else raw
    if isinstance(data, dict):
        data = data.get("questions")
    if not isinstance(data, list):
        raise PayloadError("El quiz debe ser una lista de preguntas")

    questions = []
    for idx, item in enumerate(data):
        if not isinstance(item, dict):
            raise PayloadError(f"Pregunta {idx + 1} con formato inválido")
        options = item.get("options") or item.get("choices") or []
        if not isinstance(options, list) or not all(isinstance(o, str) for o in options):
            raise PayloadError(f"Pregunta {idx + 1}: las opciones deben ser una lista de textos")
        question = Question.from_dict(item, idx)
        if not question.text:
            raise PayloadError(f"Pregunta {idx + 1} sin enunciado")
        questions.append(question)

    ids = [q.id for q in questions]
    if len(set(ids)) != len(ids):
        raise PayloadError("Identificadores de pregunta duplicados")
    return questions


def parse_grading(raw: Any) -> GradingResult:
    """Interpretar el resultado de GradeQuiz."""
    data = _as_object(raw, "corrección")
    if "correct" not in data:
        raise PayloadError("Campo requerido faltante: correct")
    if not isinstance(data["correct"], bool):
        raise PayloadError(f"El campo correct debe ser booleano: {data['correct']!r}")
    try:
        return GradingResult.from_dict(data)
    except (TypeError, ValueError, AttributeError) as e:
        raise PayloadError(f"Corrección inválida: {e}")
