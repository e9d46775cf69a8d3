"""
HabitFlow - context-aware routine engine
"""

__version__ = "1.0.0"
