"""
Local persistence for routine sessions and templates.
"""
from .session_store import SessionStore

__all__ = ["SessionStore"]
