from .context_resolver import (
    ContextSettings,
    Coordinate,
    RoutineContext,
    SavedLocation,
    SystemContextProvider,
    TimeOfDay,
    TimeSlotDefinition,
    Weekday,
    default_settings,
    resolve_context,
)

__all__ = [
    "ContextSettings",
    "Coordinate",
    "RoutineContext",
    "SavedLocation",
    "SystemContextProvider",
    "TimeOfDay",
    "TimeSlotDefinition",
    "Weekday",
    "default_settings",
    "resolve_context",
]
