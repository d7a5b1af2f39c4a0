"""Quiz de verificación que habilita el avance de paso."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..service.client import ServiceError
from ..service.payloads import PayloadError, parse_grading, parse_questions
from .state import GradingResult, QuizSession

if TYPE_CHECKING:
    from ..service.client import BuilderClient

logger = logging.getLogger(__name__)


class QuizFetchError(Exception):
    """No se pudieron obtener preguntas para el paso."""

    pass


class QuizGradingError(Exception):
    """La corrección falló por transporte o formato."""

    pass


class QuizIncompleteError(Exception):
    """Hay preguntas sin responder; no se envía nada."""

    def __init__(self, unanswered: int) -> None:
        noun = "pregunta" if unanswered == 1 else "preguntas"
        super().__init__(f"Responde todas las preguntas antes de enviar ({unanswered} {noun} sin responder)")
        self.unanswered = unanswered


class QuizGate:
    """Obtiene, valida y envía el quiz de un paso."""

    def __init__(self, client: BuilderClient) -> None:
        self.client = client

    async def fetch_questions(self, session_id: str, step_index: int) -> QuizSession:
        """Crear un QuizSession con las preguntas del paso."""
        try:
            raw = await self.client.get_step_questions(session_id, step_index)
            questions = parse_questions(raw)
        except (ServiceError, PayloadError) as e:
            logger.warning("No se pudo obtener el quiz del paso %d: %s", step_index, e)
            raise QuizFetchError("No se pudieron cargar las preguntas. Inténtalo de nuevo.") from e

        if not questions:
            raise QuizFetchError("El servicio no devolvió preguntas para este paso.")

        return QuizSession(step_index=step_index, questions=questions)

    @staticmethod
    def record_answer(quiz: QuizSession, question_id: str, option: str) -> None:
        """Registrar (o cambiar) la respuesta de una pregunta."""
        quiz.answers[question_id] = option

    @staticmethod
    def validate(quiz: QuizSession) -> None:
        """Lanza QuizIncompleteError con el número exacto de pendientes."""
        missing = quiz.unanswered()
        if missing:
            raise QuizIncompleteError(len(missing))

    async def submit(self, session_id: str, quiz: QuizSession) -> GradingResult:
        """Validar localmente y enviar las respuestas a corrección."""
        self.validate(quiz)

        answers = [
            {
                "question_id": q.id,
                "answer": quiz.answers[q.id],
                "correct_answer": q.correct_answer,
            }
            for q in quiz.questions
        ]

        try:
            raw = await self.client.verify_step_completion(session_id, quiz.step_index, answers)
            result = parse_grading(raw)
        except (ServiceError, PayloadError) as e:
            logger.warning("Corrección del paso %d falló: %s", quiz.step_index, e)
            raise QuizGradingError("No se pudo corregir el quiz. Inténtalo de nuevo.") from e

        return result
