"""
Habitflow logger module for structured routine events.
"""
from .unified import EVENT_CATEGORIES, UnifiedLogger

__all__ = ["EVENT_CATEGORIES", "UnifiedLogger"]
