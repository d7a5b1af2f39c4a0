"""Avance entre pasos del proyecto guiado."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..service.client import ServiceError
from ..service.payloads import PayloadError, parse_step_payload
from .state import CompletionSignal, ExpertiseLevel, Session, Step

if TYPE_CHECKING:
    from ..service.client import BuilderClient

logger = logging.getLogger(__name__)


class StepRequestError(Exception):
    """No se pudo obtener el siguiente paso (recuperable)."""

    pass


class StepController:
    """Pide pasos al servicio y los aplica a la sesión."""

    def __init__(self, client: BuilderClient) -> None:
        self.client = client

    async def request_next_step(
        self,
        session: Session,
        current_code: str,
    ) -> tuple[Step | CompletionSignal, str | None]:
        """Pedir el siguiente paso sin modificar la sesión.

        Retorna el resultado y el session_id que el servicio incluyó en la
        respuesta (None si no lo incluyó).
        """
        try:
            response = await self.client.next_step(
                session_id=session.session_id,
                project_type=session.project_type.value,
                expertise_level=session.expertise_level.value,
                project_idea=session.project_idea,
                current_step=session.current_step_index,
                user_code=current_code,
            )
        except ServiceError as e:
            logger.warning("NextStep falló para %s: %s", session.session_id, e)
            raise StepRequestError("No se pudo cargar el siguiente paso. Inténtalo de nuevo.") from e

        try:
            outcome = parse_step_payload(response.payload)
        except PayloadError as e:
            logger.warning("Respuesta de NextStep ilegible: %s", e)
            raise StepRequestError("Hubo un problema cargando el siguiente paso. Inténtalo de nuevo.") from e

        return outcome, response.session_id

    def apply(self, session: Session, step: Step) -> None:
        """Añadir el paso y avanzar el índice exactamente en 1."""
        if session.steps:
            session.current_step_index += 1
        session.steps.append(step)

    @staticmethod
    def starter_code(session: Session, step: Step) -> str | None:
        """Código para precargar el editor, o None si debe empezar vacío.

        Solo el primer paso de un principiante se precarga.
        """
        if session.expertise_level is not ExpertiseLevel.BEGINNER:
            return None
        if session.current_step_index != 0:
            return None
        return step.suggested_code or None
