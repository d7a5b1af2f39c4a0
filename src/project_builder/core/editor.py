"""Buffers del editor de código del estudiante."""

from __future__ import annotations

from dataclasses import dataclass, field

from .state import ProjectType

LANGUAGES = ("html", "css", "javascript", "python")


@dataclass
class EditorBuffers:
    """Un buffer por lenguaje y el lenguaje activo."""

    buffers: dict[str, str] = field(default_factory=lambda: {lang: "" for lang in LANGUAGES})
    current_language: str = "python"

    @classmethod
    def for_project(cls, project_type: ProjectType) -> EditorBuffers:
        """Editor vacío con el lenguaje inicial del stack."""
        initial = "html" if project_type is ProjectType.HTML_CSS_JS else "python"
        return cls(current_language=initial)

    def set_code(self, code: str, language: str | None = None) -> None:
        """Reemplazar el contenido de un buffer y activarlo."""
        language = language or self.current_language
        if language not in self.buffers:
            raise ValueError(f"Lenguaje no soportado: {language}")
        self.buffers[language] = code
        self.current_language = language

    def current_code(self) -> str:
        return self.buffers.get(self.current_language, "")

    def clear(self) -> None:
        for lang in self.buffers:
            self.buffers[lang] = ""

    def load_starter(self, project_type: ProjectType, code: str) -> str:
        """Colocar código inicial en el buffer que le corresponde.

        Retorna el lenguaje elegido.
        """
        if project_type is ProjectType.PYTHON_STREAMLIT:
            language = "python"
        elif "<html" in code:
            language = "html"
        elif "style" in code and "{" in code:
            language = "css"
        else:
            language = "javascript"
        self.set_code(code, language)
        return language
