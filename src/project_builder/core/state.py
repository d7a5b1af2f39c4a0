"""Estado de la sesión guiada del estudiante."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ProjectType(Enum):
    """Stacks tecnológicos soportados."""

    PYTHON_STREAMLIT = "python+streamlit"
    HTML_CSS_JS = "html+css+js"


class ExpertiseLevel(Enum):
    """Nivel declarado por el estudiante."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    EXPERT = "expert"


class SessionPhase(Enum):
    """Estado explícito de la sesión (un único valor a la vez)."""

    AWAITING_STEP = "awaiting_step"  # cargando pasos o aún sin ninguno
    IN_STEP = "in_step"              # editando / ejecutando código
    QUIZ_PENDING = "quiz_pending"    # preguntas listas, esperando respuestas
    QUIZ_GRADING = "quiz_grading"    # respuestas enviadas, esperando nota
    COMPLETED = "completed"          # terminal


@dataclass
class Step:
    """Un paso del proyecto guiado."""

    title: str
    description: str
    suggested_code: str | None = None
    expected_outcome: str | None = None
    quiz_question: str | None = None
    feedback: str | None = None

    def attach_feedback(self, text: str) -> bool:
        """Fijar feedback una única vez. Retorna False si ya existía."""
        if self.feedback is not None:
            return False
        self.feedback = text
        return True

    def display_title(self, number: int) -> str:
        """Título con el prefijo 'Step N:' normalizado."""
        if not self.title:
            return f"Step {number}"
        if self.title.startswith(f"Step {number}:"):
            return self.title
        bare = re.sub(r"^Step\s+\d+:\s*", "", self.title)
        return f"Step {number}: {bare}"

    def to_dict(self) -> dict[str, Any]:
        """Convertir a diccionario (nombres del servicio)."""
        return {
            "title": self.title,
            "description": self.description,
            "code": self.suggested_code,
            "expected_outcome": self.expected_outcome,
            "quiz_question": self.quiz_question,
            "feedback": self.feedback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        """Crear desde diccionario."""
        return cls(
            title=data.get("title") or "",
            description=data["description"],
            suggested_code=data.get("code") or None,
            expected_outcome=data.get("expected_outcome") or None,
            quiz_question=data.get("quiz_question") or None,
            feedback=data.get("feedback") or None,
        )


@dataclass(frozen=True)
class CompletionSignal:
    """El servicio indica que el proyecto está terminado."""

    message: str = ""


@dataclass(frozen=True)
class Question:
    """Una pregunta de verificación."""

    id: str
    text: str
    options: list[str] = field(default_factory=list)
    correct_answer: str | None = None  # opaco, solo lo interpreta el corrector

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int = 0) -> Question:
        """Crear desde diccionario."""
        options = data.get("options") or data.get("choices") or []
        qid = data.get("question_id", data.get("id", index + 1))
        return cls(
            id=str(qid),
            text=data.get("question_text") or data.get("question") or data.get("text") or "",
            options=[str(o) for o in options],
            correct_answer=data.get("correct_answer", data.get("answer")),
        )


@dataclass
class GradingResult:
    """Resultado de la corrección de un quiz."""

    correct: bool
    score: float = 0.0  # 0 - 100
    feedback: str = ""
    per_question_feedback: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GradingResult:
        """Crear desde diccionario."""
        score = float(data.get("score", 100.0 if data.get("correct") else 0.0))
        per_question = data.get("question_feedback") or data.get("per_question_feedback") or {}
        if isinstance(per_question, list):
            per_question = {
                str(item.get("question_id", i + 1)): item.get("feedback", "")
                for i, item in enumerate(per_question)
            }
        return cls(
            correct=bool(data["correct"]),
            score=min(max(score, 0.0), 100.0),
            feedback=data.get("feedback", ""),
            per_question_feedback={str(k): str(v) for k, v in per_question.items()},
        )


@dataclass
class QuizSession:
    """Quiz efímero ligado a un único paso."""

    step_index: int
    questions: list[Question]
    answers: dict[str, str] = field(default_factory=dict)
    result: GradingResult | None = None

    def unanswered(self) -> list[Question]:
        """Preguntas sin respuesta no vacía."""
        return [q for q in self.questions if not self.answers.get(q.id, "").strip()]

    @property
    def passed(self) -> bool:
        return self.result is not None and self.result.correct

    def feedback_for(self, question_id: str) -> str | None:
        """Feedback de la última corrección para una pregunta."""
        if self.result is None:
            return None
        return self.result.per_question_feedback.get(question_id)


@dataclass
class QAEntry:
    """Pregunta libre del estudiante y respuesta del tutor."""

    question: str
    answer: str
    step_index: int
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convertir a diccionario."""
        return {
            "question": self.question,
            "answer": self.answer,
            "step_index": self.step_index,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QAEntry:
        """Crear desde diccionario."""
        return cls(
            question=data["question"],
            answer=data["answer"],
            step_index=data.get("step_index", 0),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class Session:
    """Registro autoritativo del progreso de un estudiante."""

    session_id: str
    project_type: ProjectType
    expertise_level: ExpertiseLevel
    project_idea: str = ""
    project_title: str = ""
    project_description: str = ""
    steps: list[Step] = field(default_factory=list)
    current_step_index: int = 0
    total_steps: int | None = None
    completed: bool = False
    completion_message: str = ""
    active_resource_id: str | None = None
    phase: SessionPhase = SessionPhase.AWAITING_STEP
    busy: bool = False
    qa_history: list[QAEntry] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def current_step(self) -> Step | None:
        """Paso activo, si ya se cargó."""
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def is_last_step(self) -> bool:
        """True si el índice alcanza el total anunciado por el servicio."""
        if self.total_steps is None:
            return False
        return self.current_step_index >= self.total_steps - 1

    def progress_label(self) -> str:
        """Texto 'Step N of M' para la cabecera."""
        total = self.total_steps if self.total_steps is not None else "?"
        return f"Step {self.current_step_index + 1} of {total}"

    def to_dict(self) -> dict[str, Any]:
        """Convertir a diccionario (sin estado transitorio).

        Las preguntas libres se guardan aparte, en el historial JSONL.
        """
        return {
            "session_id": self.session_id,
            "project_type": self.project_type.value,
            "expertise_level": self.expertise_level.value,
            "project_idea": self.project_idea,
            "project_title": self.project_title,
            "project_description": self.project_description,
            "steps": [s.to_dict() for s in self.steps],
            "current_step_index": self.current_step_index,
            "total_steps": self.total_steps,
            "completed": self.completed,
            "completion_message": self.completion_message,
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Crear desde diccionario.

        El proceso de preview y el quiz no se restauran: pertenecían a la
        ejecución anterior.
        """
        steps = [Step.from_dict(s) for s in data.get("steps", [])]
        completed = data.get("completed", False)
        if completed:
            phase = SessionPhase.COMPLETED
        elif steps:
            phase = SessionPhase.IN_STEP
        else:
            phase = SessionPhase.AWAITING_STEP

        return cls(
            session_id=data["session_id"],
            project_type=ProjectType(data["project_type"]),
            expertise_level=ExpertiseLevel(data["expertise_level"]),
            project_idea=data.get("project_idea", ""),
            project_title=data.get("project_title", ""),
            project_description=data.get("project_description", ""),
            steps=steps,
            current_step_index=data.get("current_step_index", 0),
            total_steps=data.get("total_steps"),
            completed=completed,
            completion_message=data.get("completion_message", ""),
            phase=phase,
            started_at=datetime.fromisoformat(data["started_at"]),
        )
