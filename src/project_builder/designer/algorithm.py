"""Diseñador de algoritmos conversacional.

Antes de programar, el estudiante describe su proyecto y el tutor le ayuda a
razonar la lógica paso a paso. El modelo marca su avance con etiquetas que
se eliminan antes de mostrar el mensaje:

- ``<progress>NN%</progress>``: porcentaje del diseño cubierto.
- ``<evaluation>...</evaluation>``: valoración breve, mostrada en cursiva.

Con progreso >= 90 se puede pedir el flujo final. La respuesta final incluye
``WORKFLOW_COMPLETE`` cuando el diseño está listo para exportar.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..service.client import ServiceError

if TYPE_CHECKING:
    from ..service.client import BuilderClient

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = (
    "Welcome to the Algorithm Designer! I'll help you think through the step-by-step "
    "logic of your project before you start coding. What project would you like to build today?"
)
FINAL_REQUEST_MESSAGE = (
    "I think we've covered everything. Could you provide the complete algorithm workflow now?"
)
FINAL_MARKER = "Here's the finalized algorithm workflow:"
COMPLETE_MARKER = "WORKFLOW_COMPLETE"
FINAL_THRESHOLD = 90

_PROGRESS_RE = re.compile(r"<progress>(\d+)%</progress>")
_EVALUATION_RE = re.compile(r"<evaluation>(.*?)</evaluation>", re.DOTALL)


@dataclass
class ProcessedReply:
    """Respuesta del modelo sin etiquetas."""

    text: str
    progress: int | None = None
    evaluation: str | None = None


def process_reply(text: str) -> ProcessedReply:
    """Extraer progreso y evaluación y limpiar las etiquetas."""
    progress = None
    match = _PROGRESS_RE.search(text)
    if match:
        progress = min(int(match.group(1)), 100)

    evaluation = None
    eval_match = _EVALUATION_RE.search(text)
    if eval_match and eval_match.group(1).strip():
        evaluation = eval_match.group(1).strip()

    clean = _EVALUATION_RE.sub("", _PROGRESS_RE.sub("", text, count=1), count=1).strip()
    if evaluation:
        clean = f"*{evaluation}*\n\n{clean}"

    return ProcessedReply(text=clean, progress=progress, evaluation=evaluation)


@dataclass
class AlgorithmDesigner:
    """Conversación con el diseñador de algoritmos."""

    client: BuilderClient
    messages: list[dict[str, str]] = field(
        default_factory=lambda: [{"role": "assistant", "content": WELCOME_MESSAGE}]
    )
    project_description: str = ""
    progress: int = 0
    workflow_complete: bool = False
    busy: bool = False

    @property
    def can_request_final(self) -> bool:
        return self.progress >= FINAL_THRESHOLD

    async def send(self, text: str) -> str | None:
        """Enviar un mensaje del estudiante. Retorna la respuesta limpia."""
        text = text.strip()
        if not text or self.busy:
            return None

        history = list(self.messages)
        self.messages.append({"role": "user", "content": text})

        reply = await self._exchange(text, history, request_final=False)
        if reply is not None and not self.project_description and len(history) <= 1:
            self.project_description = text
        return reply

    async def request_final(self) -> str | None:
        """Pedir el flujo de algoritmo completo."""
        if not self.can_request_final or self.busy:
            return None

        history = list(self.messages)
        self.messages.append({"role": "user", "content": FINAL_REQUEST_MESSAGE})
        return await self._exchange(
            "Please provide the complete algorithm workflow.", history, request_final=True
        )

    async def _exchange(
        self,
        message: str,
        history: list[dict[str, str]],
        request_final: bool,
    ) -> str | None:
        self.busy = True
        try:
            data = await self.client.algorithm_designer(
                message=message,
                conversation_history=history,
                project_description=self.project_description or None,
                request_final=request_final,
            )
            raw = data.get("response")
            if not isinstance(raw, str):
                raise ServiceError("El diseñador no devolvió texto")
        except ServiceError as e:
            logger.warning("Algorithm designer falló: %s", e)
            self.messages.append({
                "role": "assistant",
                "content": f"⚠️ Sorry, I encountered an error: {e}. Please try again later.",
            })
            return None
        finally:
            self.busy = False

        reply = process_reply(raw)
        if reply.progress is not None:
            self.progress = reply.progress
        elif isinstance(data.get("progress"), (int, float)):
            self.progress = int(data["progress"])

        self.messages.append({"role": "assistant", "content": reply.text})
        if COMPLETE_MARKER in reply.text:
            self.workflow_complete = True
        return reply.text

    def extract_workflow(self) -> str:
        """Texto del flujo final (o el último mensaje del asistente)."""
        assistant = [m["content"] for m in self.messages if m["role"] == "assistant"]
        if not assistant:
            return ""
        last = assistant[-1]
        sections = last.split(FINAL_MARKER, 1)
        if len(sections) > 1:
            return sections[1].replace(COMPLETE_MARKER, "").strip()
        return last.replace(COMPLETE_MARKER, "").strip()
