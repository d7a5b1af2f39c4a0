"""Persistencia local de la sesión del estudiante."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import Session

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class SessionPersistence:
    """Guarda instantáneas de sesión y el historial de preguntas."""

    def __init__(self, base_path: Path) -> None:
        """Inicializar con ruta base."""
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def get_session_path(self, session_id: str) -> Path:
        """Obtener directorio de la sesión.

        Lanza ValueError si el identificador no es un nombre de directorio
        seguro (p.ej. contiene separadores o "..").
        """
        if not _SESSION_ID_RE.match(session_id) or ".." in session_id:
            raise ValueError(f"Identificador de sesión inválido: {session_id!r}")
        return self.base_path / session_id

    def list_sessions(self) -> list[dict]:
        """Listar sesiones guardadas, la más reciente primero."""
        sessions = []
        for session_dir in self.base_path.iterdir():
            session_file = session_dir / "session.json"
            if not session_file.exists():
                continue
            try:
                data = json.loads(session_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                logger.warning("Sesión ilegible: %s", session_file)
                continue

            sessions.append({
                "session_id": data.get("session_id", session_dir.name),
                "title": data.get("project_title") or data.get("project_idea", ""),
                "project_type": data.get("project_type", ""),
                "step": data.get("current_step_index", 0),
                "completed": data.get("completed", False),
                "started_at": data.get("started_at", ""),
            })

        return sorted(sessions, key=lambda x: x["started_at"], reverse=True)

    def save_session(self, session: Session) -> None:
        """Guardar instantánea de la sesión."""
        session_file = self.get_session_path(session.session_id) / "session.json"
        session_file.parent.mkdir(parents=True, exist_ok=True)
        with open(session_file, "w", encoding="utf-8") as f:
            json.dump(session.to_dict(), f, indent=2, ensure_ascii=False)

    def load_session(self, session_id: str) -> Session | None:
        """Cargar una sesión guardada."""
        from .state import Session

        try:
            session_file = self.get_session_path(session_id) / "session.json"
        except ValueError as e:
            logger.warning("%s", e)
            return None
        if not session_file.exists():
            return None

        try:
            with open(session_file, "r", encoding="utf-8") as f:
                return Session.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError):
            logger.warning("No se pudo cargar la sesión %s", session_id)
            return None

    def get_chat_history_path(self, session_id: str) -> Path:
        """Obtener ruta del historial de preguntas."""
        return self.get_session_path(session_id) / "chat.jsonl"

    def append_chat_message(self, session_id: str, message: dict) -> None:
        """Añadir pregunta/respuesta al historial."""
        chat_file = self.get_chat_history_path(session_id)
        chat_file.parent.mkdir(parents=True, exist_ok=True)

        with open(chat_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(message, ensure_ascii=False) + "\n")

    def load_chat_history(self, session_id: str, n: int = 100) -> list[dict]:
        """Cargar últimos N mensajes."""
        chat_file = self.get_chat_history_path(session_id)

        if not chat_file.exists():
            return []

        messages = []
        with open(chat_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    try:
                        messages.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue

        return messages[-n:] if n > 0 else messages
