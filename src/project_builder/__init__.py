"""AI-Guided Project Builder: controlador de sesiones de proyecto guiado."""

__version__ = "0.1.0"
