"""
Routine Engine - context resolution, template selection and session execution
"""

from .core.routine_service import RoutineService, default_templates
from .errors import OperationResult, RoutineErrorKind, ValidationError

__all__ = ["RoutineService", "default_templates", "OperationResult", "RoutineErrorKind", "ValidationError"]
