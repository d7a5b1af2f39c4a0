"""Máquina de estados de la sesión guiada.

Punto de entrada único para las acciones del estudiante. Es el único que
escribe ``current_step_index``, ``completed`` y ``active_resource_id``.

Cada acción que llama al servicio:

- marca ``session.busy`` antes de la llamada y lo limpia en un ``finally``;
- aplica el resultado solo si la llamada tuvo éxito (todo o nada);
- descarta la respuesta si la sesión fue reiniciada mientras tanto.

Los errores nunca se propagan: se devuelven como ``ActionResult``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..config import get_config
from ..service.client import BuilderClient, ServiceError
from ..service.payloads import PayloadError, parse_project_payload
from .editor import EditorBuffers
from .quiz import QuizFetchError, QuizGate, QuizGradingError, QuizIncompleteError
from .resources import ExecutionResult, PreviewRequest, ResourceBusyError, ResourceTracker
from .state import (
    CompletionSignal,
    ExpertiseLevel,
    GradingResult,
    ProjectType,
    QAEntry,
    QuizSession,
    Session,
    SessionPhase,
    Step,
)
from .steps import StepController, StepRequestError

if TYPE_CHECKING:
    from .persistence import SessionPersistence

logger = logging.getLogger(__name__)

STALE_MESSAGE = "La sesión se reinició; se descartó una respuesta antigua."


class SessionError(Exception):
    """Acción no válida en el estado actual de la sesión."""

    pass


@dataclass
class ActionResult:
    """Resultado de una acción del estudiante para la capa de presentación."""

    ok: bool
    message: str = ""
    phase: SessionPhase = SessionPhase.AWAITING_STEP
    step: Step | None = None
    execution: ExecutionResult | None = None
    grading: GradingResult | None = None
    answer: str | None = None
    unanswered: int = 0
    stale: bool = False

    @classmethod
    def error(cls, message: str, phase: SessionPhase, **kwargs) -> ActionResult:
        """Crear un resultado de error."""
        return cls(ok=False, message=message, phase=phase, **kwargs)


class SessionOrchestrator:
    """Coordina StepController, QuizGate y ResourceTracker para una sesión."""

    def __init__(
        self,
        client: BuilderClient | None = None,
        advance_delay: float | None = None,
        persistence: SessionPersistence | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        config = get_config()
        self.client = client or BuilderClient()
        self.advance_delay = config.advance_delay if advance_delay is None else advance_delay
        self.default_project_idea = config.default_project_idea
        self.persistence = persistence
        self._sleep = sleep

        self.step_controller = StepController(self.client)
        self.quiz_gate = QuizGate(self.client)

        self.session: Session | None = None
        self.quiz: QuizSession | None = None
        self.editor: EditorBuffers | None = None
        self.tracker: ResourceTracker | None = None
        self.last_execution: ExecutionResult | None = None
        self._pending_start: object | None = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self.session.phase if self.session else SessionPhase.AWAITING_STEP

    @contextmanager
    def _busy(self, session: Session) -> Iterator[None]:
        session.busy = True
        try:
            yield
        finally:
            session.busy = False

    def _is_current(self, session: Session, echoed_id: str | None = None) -> bool:
        if self.session is not session:
            return False
        return echoed_id is None or echoed_id == session.session_id

    def _stale(self, session: Session) -> ActionResult:
        logger.info("Respuesta descartada para la sesión %s", session.session_id)
        return ActionResult.error(STALE_MESSAGE, self.phase, stale=True)

    def _check(self, *allowed: SessionPhase) -> Session:
        """Validar que hay sesión libre en una de las fases permitidas."""
        session = self.session
        if session is None:
            raise SessionError("No hay proyecto activo. Empieza uno nuevo.")
        if session.busy:
            raise SessionError("Hay una operación en curso; espera a que termine.")
        if session.completed and SessionPhase.COMPLETED not in allowed:
            raise SessionError("El proyecto ya está completado.")
        if allowed and session.phase not in allowed:
            raise SessionError(f"Acción no disponible en la fase {session.phase.value}.")
        return session

    def _snapshot(self, session: Session) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.save_session(session)
        except (OSError, ValueError) as e:
            logger.warning("No se pudo guardar la sesión %s: %s", session.session_id, e)

    def _load_starter(self, session: Session, step: Step) -> None:
        assert self.editor is not None
        starter = self.step_controller.starter_code(session, step)
        if starter:
            self.editor.load_starter(session.project_type, starter)

    def current_code(self) -> str:
        return self.editor.current_code() if self.editor else ""

    # ------------------------------------------------------------------
    # Inicio / reinicio
    # ------------------------------------------------------------------

    async def start(
        self,
        project_type: ProjectType | str,
        expertise_level: ExpertiseLevel | str,
        project_idea: str | None = None,
    ) -> ActionResult:
        """Crear una sesión nueva (StartSession)."""
        try:
            ptype = ProjectType(project_type)
            level = ExpertiseLevel(expertise_level)
        except ValueError:
            return ActionResult.error(
                "Selecciona un tipo de proyecto y un nivel de experiencia válidos.", self.phase
            )
        if self._pending_start is not None:
            return ActionResult.error("Ya se está creando un proyecto.", self.phase)

        if self.session is not None:
            await self.reset()

        token = object()
        self._pending_start = token
        try:
            response = await self.client.start_project(ptype.value, level.value, project_idea)
            payload = parse_project_payload(response.payload)
        except (ServiceError, PayloadError) as e:
            logger.warning("StartSession falló: %s", e)
            return ActionResult.error("No se pudo iniciar el proyecto. Inténtalo de nuevo.", self.phase)
        finally:
            if self._pending_start is token:
                self._pending_start = None
            else:
                token = None

        if token is None:
            logger.info("StartSession descartado: hubo un reinicio mientras tanto")
            return ActionResult.error(STALE_MESSAGE, self.phase, stale=True)

        if len(payload.steps) > 1:
            logger.debug("Se ignoran %d pasos adicionales del plan inicial", len(payload.steps) - 1)

        session = Session(
            session_id=response.session_id,
            project_type=ptype,
            expertise_level=level,
            project_idea=project_idea or self.default_project_idea,
            project_title=payload.title,
            project_description=payload.description,
            total_steps=payload.total_steps,
        )
        self.session = session
        self.editor = EditorBuffers.for_project(ptype)
        self.tracker = ResourceTracker(self.client)

        if payload.steps:
            self.step_controller.apply(session, payload.steps[0])
            session.phase = SessionPhase.IN_STEP
            self._load_starter(session, payload.steps[0])

        logger.info("Sesión %s iniciada (%s, %s)", session.session_id, ptype.value, level.value)
        self._snapshot(session)
        return ActionResult(ok=True, phase=session.phase, step=session.current_step)

    def resume(self, session_id: str) -> ActionResult:
        """Restaurar una sesión guardada localmente."""
        if self.persistence is None:
            return ActionResult.error("No hay almacenamiento local configurado.", self.phase)
        if self.session is not None:
            return ActionResult.error("Reinicia la sesión actual antes de restaurar otra.", self.phase)

        session = self.persistence.load_session(session_id)
        if session is None:
            return ActionResult.error(f"Sesión no encontrada: {session_id}", self.phase)

        for message in self.persistence.load_chat_history(session_id, n=0):
            try:
                session.qa_history.append(QAEntry.from_dict(message))
            except (KeyError, TypeError, ValueError):
                logger.warning("Entrada de historial ilegible en %s", session_id)

        self.session = session
        self.editor = EditorBuffers.for_project(session.project_type)
        self.tracker = ResourceTracker(self.client)
        return ActionResult(ok=True, phase=session.phase, step=session.current_step)

    async def reset(self) -> ActionResult:
        """Descartar toda la sesión; siempre libera el preview."""
        session, tracker = self.session, self.tracker

        # Desconectar primero: cualquier respuesta en vuelo quedará obsoleta
        self.session = None
        self.quiz = None
        self.editor = None
        self.tracker = None
        self.last_execution = None
        self._pending_start = None

        if tracker is not None:
            await tracker.release()
        if session is not None:
            session.active_resource_id = None
            logger.info("Sesión %s reiniciada", session.session_id)

        return ActionResult(ok=True, phase=SessionPhase.AWAITING_STEP)

    # ------------------------------------------------------------------
    # Pasos
    # ------------------------------------------------------------------

    def set_code(self, code: str, language: str | None = None) -> ActionResult:
        """Actualizar un buffer del editor (local)."""
        if self.session is None or self.editor is None:
            return ActionResult.error("No hay proyecto activo.", self.phase)
        try:
            self.editor.set_code(code, language)
        except ValueError as e:
            return ActionResult.error(str(e), self.phase)
        return ActionResult(ok=True, phase=self.phase)

    async def next_step(self) -> ActionResult:
        """Avance incondicional al siguiente paso."""
        try:
            session = self._check(SessionPhase.IN_STEP, SessionPhase.AWAITING_STEP)
        except SessionError as e:
            return ActionResult.error(str(e), self.phase)
        if session.steps and session.is_last_step:
            return ActionResult.error(
                "Es el último paso: completa el quiz para terminar el proyecto.", session.phase
            )

        with self._busy(session):
            return await self._advance(session)

    async def _advance(self, session: Session, feedback: str | None = None) -> ActionResult:
        """Pedir el siguiente paso y aplicarlo solo si todo salió bien."""
        try:
            outcome, echoed = await self.step_controller.request_next_step(session, self.current_code())
        except StepRequestError as e:
            return ActionResult.error(str(e), session.phase)

        if not self._is_current(session, echoed):
            return self._stale(session)

        # Liberar el preview antes de avanzar
        assert self.tracker is not None
        await self.tracker.release()
        session.active_resource_id = None
        if not self._is_current(session):
            return self._stale(session)

        if feedback and session.current_step is not None:
            session.current_step.attach_feedback(feedback)
        self.quiz = None

        if isinstance(outcome, CompletionSignal):
            session.completed = True
            session.completion_message = outcome.message
            session.phase = SessionPhase.COMPLETED
            logger.info("Sesión %s completada", session.session_id)
            self._snapshot(session)
            return ActionResult(
                ok=True,
                message=outcome.message or "¡Proyecto completado!",
                phase=session.phase,
            )

        self.step_controller.apply(session, outcome)
        session.phase = SessionPhase.IN_STEP
        assert self.editor is not None
        self.editor.clear()
        self._load_starter(session, outcome)

        logger.info("Sesión %s en el paso %d", session.session_id, session.current_step_index)
        self._snapshot(session)
        return ActionResult(ok=True, phase=session.phase, step=outcome)

    # ------------------------------------------------------------------
    # Quiz
    # ------------------------------------------------------------------

    async def complete_step(self) -> ActionResult:
        """Pedir el quiz de verificación del paso actual."""
        try:
            session = self._check(SessionPhase.IN_STEP)
        except SessionError as e:
            return ActionResult.error(str(e), self.phase)

        with self._busy(session):
            try:
                quiz = await self.quiz_gate.fetch_questions(
                    session.session_id, session.current_step_index
                )
            except QuizFetchError as e:
                return ActionResult.error(str(e), session.phase)

            if not self._is_current(session):
                return self._stale(session)

            self.quiz = quiz
            session.phase = SessionPhase.QUIZ_PENDING
            return ActionResult(ok=True, phase=session.phase)

    def answer(self, question_id: str, option: str) -> ActionResult:
        """Registrar una respuesta del quiz."""
        try:
            self._check(SessionPhase.QUIZ_PENDING)
        except SessionError as e:
            return ActionResult.error(str(e), self.phase)
        assert self.quiz is not None
        self.quiz_gate.record_answer(self.quiz, question_id, option)
        return ActionResult(ok=True, phase=self.phase, unanswered=len(self.quiz.unanswered()))

    def cancel_quiz(self) -> ActionResult:
        """Abandonar el quiz y volver al paso."""
        try:
            session = self._check(SessionPhase.QUIZ_PENDING)
        except SessionError as e:
            return ActionResult.error(str(e), self.phase)
        self.quiz = None
        session.phase = SessionPhase.IN_STEP
        return ActionResult(ok=True, phase=session.phase)

    async def submit_quiz(self) -> ActionResult:
        """Enviar el quiz; si se aprueba, avanzar de paso."""
        try:
            session = self._check(SessionPhase.QUIZ_PENDING)
        except SessionError as e:
            return ActionResult.error(str(e), self.phase)
        quiz = self.quiz
        assert quiz is not None

        try:
            self.quiz_gate.validate(quiz)
        except QuizIncompleteError as e:
            return ActionResult.error(str(e), session.phase, unanswered=e.unanswered)

        with self._busy(session):
            if not quiz.passed:
                session.phase = SessionPhase.QUIZ_GRADING
                try:
                    result = await self.quiz_gate.submit(session.session_id, quiz)
                except QuizGradingError as e:
                    if self._is_current(session):
                        session.phase = SessionPhase.QUIZ_PENDING
                        return ActionResult.error(str(e), session.phase)
                    return self._stale(session)

                if not self._is_current(session):
                    return self._stale(session)

                quiz.result = result

                if not result.correct:
                    session.phase = SessionPhase.QUIZ_PENDING
                    return ActionResult(
                        ok=True,
                        message=result.feedback or "Algunas respuestas no son correctas. Revisa y vuelve a intentarlo.",
                        phase=session.phase,
                        grading=result,
                    )

                if self.advance_delay > 0:
                    await self._sleep(self.advance_delay)
                if not self._is_current(session):
                    return self._stale(session)

            result = quiz.result
            assert result is not None
            feedback = result.feedback or f"Quiz superado ({result.score:.0f}%)."
            outcome = await self._advance(session, feedback=feedback)
            if not outcome.ok and self._is_current(session):
                # Quiz aprobado pero sin siguiente paso: reintentar con submit
                session.phase = SessionPhase.QUIZ_PENDING
                outcome.phase = session.phase
            outcome.grading = result
            return outcome

    # ------------------------------------------------------------------
    # Ejecución y preguntas
    # ------------------------------------------------------------------

    async def run_code(self, language: str | None = None) -> ActionResult:
        """Ejecutar el código del editor (o arrancar la app de preview)."""
        try:
            session = self._check(SessionPhase.IN_STEP, SessionPhase.QUIZ_PENDING)
        except SessionError as e:
            return ActionResult.error(str(e), self.phase)
        assert self.editor is not None and self.tracker is not None

        language = language or self.editor.current_language
        code = self.editor.buffers.get(language, "")
        if not code.strip():
            return ActionResult.error("No hay código para ejecutar.", session.phase)

        tracker = self.tracker
        with self._busy(session):
            await tracker.release()
            session.active_resource_id = None
            try:
                result = await tracker.acquire(PreviewRequest(code=code, language=language))
            except (ServiceError, ResourceBusyError) as e:
                logger.warning("Ejecución falló: %s", e)
                return ActionResult.error(
                    "Ocurrió un error durante la ejecución del código.", session.phase
                )

            if not self._is_current(session):
                # Proceso huérfano de una sesión descartada
                await tracker.release()
                return self._stale(session)

            session.active_resource_id = tracker.active_id
            self.last_execution = result
            message = result.startup_error or ""
            return ActionResult(
                ok=result.succeeded, message=message, phase=session.phase, execution=result
            )

    async def stop_preview(self) -> ActionResult:
        """Detener la app de preview activa."""
        try:
            session = self._check(*SessionPhase)
        except SessionError as e:
            return ActionResult.error(str(e), self.phase)
        assert self.tracker is not None

        with self._busy(session):
            released = await self.tracker.release()
            session.active_resource_id = None
        return ActionResult(
            ok=True,
            message="Preview detenido." if released else "No había preview activo.",
            phase=session.phase,
        )

    async def ask(self, question: str) -> ActionResult:
        """Pregunta libre al tutor sobre el código actual."""
        question = question.strip()
        if not question:
            return ActionResult.error("Escribe una pregunta.", self.phase)
        try:
            session = self._check(*SessionPhase)
        except SessionError as e:
            return ActionResult.error(str(e), self.phase)

        with self._busy(session):
            try:
                answer = await self.client.ask_question(
                    session.session_id,
                    session.project_type.value,
                    question,
                    self.current_code(),
                )
            except ServiceError as e:
                logger.warning("AskQuestion falló: %s", e)
                return ActionResult.error("No se pudo obtener una respuesta. Inténtalo de nuevo.", session.phase)

            if not self._is_current(session):
                return self._stale(session)

            entry = QAEntry(question=question, answer=answer, step_index=session.current_step_index)
            session.qa_history.append(entry)
            if self.persistence is not None:
                try:
                    self.persistence.append_chat_message(session.session_id, entry.to_dict())
                except (OSError, ValueError) as e:
                    logger.warning("No se pudo guardar la pregunta: %s", e)
            return ActionResult(ok=True, phase=session.phase, answer=answer)

    async def close(self) -> None:
        """Liberar recursos y cerrar el cliente HTTP."""
        await self.reset()
        await self.client.close()
