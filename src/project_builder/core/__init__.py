"""Core: estado de sesión, recursos y persistencia."""

from .resources import ExecutionResult, PreviewRequest, ResourceHandle, ResourceTracker
from .state import (
    CompletionSignal,
    ExpertiseLevel,
    GradingResult,
    ProjectType,
    Question,
    QuizSession,
    Session,
    SessionPhase,
    Step,
)

__all__ = [
    "ExecutionResult",
    "PreviewRequest",
    "ResourceHandle",
    "ResourceTracker",
    "CompletionSignal",
    "ExpertiseLevel",
    "GradingResult",
    "ProjectType",
    "Question",
    "QuizSession",
    "Session",
    "SessionPhase",
    "Step",
]
