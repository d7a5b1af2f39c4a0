"""Exportación de sesiones y diseños a Markdown."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..core.state import Session
    from ..designer.algorithm import AlgorithmDesigner


class ExportError(Exception):
    """Error en operación de exportación."""

    pass


def _fence(code: str, language: str = "") -> str:
    return f"```{language}\n{code.rstrip()}\n```"


class ExportManager:
    """Escribe transcripciones de sesión y flujos de algoritmo."""

    def __init__(self, exports_dir: Path) -> None:
        """Inicializar manager."""
        self.exports_dir = Path(exports_dir)
        self.exports_dir.mkdir(parents=True, exist_ok=True)

    def _output_path(self, stem: str, output_path: Path | None) -> Path:
        if output_path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_path = self.exports_dir / f"{stem}_{timestamp}.md"
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        return output_path

    def render_session(self, session: Session) -> str:
        """Transcripción Markdown de los pasos y preguntas."""
        code_lang = "python" if session.project_type.value == "python+streamlit" else "html"
        lines = [
            f"# {session.project_title or session.project_idea or 'Project'}",
            "",
        ]
        if session.project_description:
            lines += [session.project_description, ""]
        lines += [
            f"- Stack: {session.project_type.value}",
            f"- Nivel: {session.expertise_level.value}",
            f"- Progreso: {session.progress_label()}",
            f"- Estado: {'completado' if session.completed else 'en curso'}",
            "",
        ]

        for number, step in enumerate(session.steps, 1):
            lines += [f"## {step.display_title(number)}", "", step.description, ""]
            if step.suggested_code:
                lines += ["### Código sugerido", "", _fence(step.suggested_code, code_lang), ""]
            if step.expected_outcome:
                lines += ["### Resultado esperado", "", step.expected_outcome, ""]
            if step.feedback:
                lines += ["### Feedback", "", step.feedback, ""]

        if session.completion_message:
            lines += ["## Final", "", session.completion_message, ""]

        if session.qa_history:
            lines += ["## Preguntas", ""]
            for entry in session.qa_history:
                lines += [f"**P (paso {entry.step_index + 1}):** {entry.question}", "", entry.answer, ""]

        return "\n".join(lines).rstrip() + "\n"

    def export_session(self, session: Session, output_path: Path | None = None) -> Path:
        """Exportar sesión a Markdown."""
        if not session.steps:
            raise ExportError("La sesión no tiene pasos que exportar")
        path = self._output_path(f"project_{session.session_id}", output_path)
        path.write_text(self.render_session(session), encoding="utf-8")
        return path

    def export_workflow(self, designer: AlgorithmDesigner, output_path: Path | None = None) -> Path:
        """Exportar el flujo del diseñador de algoritmos."""
        text = designer.extract_workflow()
        if not text:
            raise ExportError("No hay flujo de algoritmo que exportar")
        path = self._output_path("algorithm_workflow", output_path)
        path.write_text(text + "\n", encoding="utf-8")
        return path
