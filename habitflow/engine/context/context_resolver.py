"""
Context Resolution
==================

Turns a clock reading, a weekday and an optional coordinate into the
(time slot, day category, location category) triple that routine templates
are matched against. Resolution is pure and total: configuration gaps fall
back to "unknown" or to the built-in weekday/weekend split, never to an
exception.
"""

from __future__ import annotations
import json
import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

UNKNOWN = "unknown"
HOME = "home"
OFFICE = "office"
WEEKDAY = "weekday"
WEEKEND = "weekend"

EARTH_RADIUS_M = 6_371_000.0
DEFAULT_RADIUS_M = 150.0
MIN_RADIUS_M = 1.0


class Weekday(IntEnum):
    """Monday=0 ... Sunday=6, same numbering as ``datetime.weekday()``."""
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


@dataclass(frozen=True, order=True)
class TimeOfDay:
    hour: int
    minute: int = 0

    def __post_init__(self):
        if not (0 <= self.hour <= 23 and 0 <= self.minute <= 59):
            raise ValueError(f"Invalid time of day: {self.hour:02d}:{self.minute:02d}")

    @property
    def total_minutes(self) -> int:
        return self.hour * 60 + self.minute

    @classmethod
    def from_datetime(cls, dt: datetime) -> "TimeOfDay":
        return cls(dt.hour, dt.minute)

    @classmethod
    def parse(cls, value: str) -> "TimeOfDay":
        hh, mm = map(int, value.split(":"))
        return cls(hh, mm)

    def isoformat(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class TimeSlotDefinition:
    """A named window of the day, start inclusive, end exclusive."""
    id: str
    name: str
    start: TimeOfDay
    end: TimeOfDay
    icon: str = "clock"
    is_built_in: bool = False

    def contains(self, t: TimeOfDay) -> bool:
        start, end, now = self.start.total_minutes, self.end.total_minutes, t.total_minutes
        if start == end:
            return False
        if start < end:
            return start <= now < end
        # wraps past midnight
        return now >= start or now < end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "icon": self.icon,
            "is_built_in": self.is_built_in,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeSlotDefinition":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            start=TimeOfDay.parse(data["start"]),
            end=TimeOfDay.parse(data["end"]),
            icon=data.get("icon", "clock"),
            is_built_in=data.get("is_built_in", False),
        )


DEFAULT_TIME_SLOTS: Tuple[TimeSlotDefinition, ...] = (
    TimeSlotDefinition("morning", "Morning", TimeOfDay(5), TimeOfDay(12), "sunrise", True),
    TimeSlotDefinition("afternoon", "Afternoon", TimeOfDay(12), TimeOfDay(17), "sun.max", True),
    TimeSlotDefinition("evening", "Evening", TimeOfDay(17), TimeOfDay(21), "sunset", True),
    TimeSlotDefinition("night", "Night", TimeOfDay(21), TimeOfDay(5), "moon", True),
)


@dataclass(frozen=True)
class DayCategory:
    id: str
    name: str
    icon: str = "calendar"
    is_built_in: bool = False


BUILT_IN_DAY_CATEGORIES = (
    DayCategory(WEEKDAY, "Weekday", "briefcase", True),
    DayCategory(WEEKEND, "Weekend", "house", True),
)


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


@dataclass
class SavedLocation:
    """A circular region that maps to a location category."""
    category_id: str
    name: str
    latitude: float
    longitude: float
    radius_m: float = DEFAULT_RADIUS_M
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category_id": self.category_id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "radius_m": self.radius_m,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedLocation":
        created = data.get("created_at")
        created_at = datetime.fromisoformat(created) if created else datetime.now(timezone.utc)
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(
            category_id=data["category_id"],
            name=data.get("name", data["category_id"]),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            radius_m=float(data.get("radius_m", DEFAULT_RADIUS_M)),
            created_at=created_at,
        )


@dataclass(frozen=True)
class RoutineContext:
    """The resolved situation a template is matched against."""
    time_slot: str
    day_category: str
    location_category: str = UNKNOWN

    def to_dict(self) -> Dict[str, str]:
        return {
            "time_slot": self.time_slot,
            "day_category": self.day_category,
            "location_category": self.location_category,
        }


def _default_day_mapping() -> Dict[Weekday, str]:
    return {d: (WEEKEND if d >= Weekday.SATURDAY else WEEKDAY) for d in Weekday}


@dataclass
class ContextSettings:
    """User-configurable inputs to context resolution."""
    time_slots: List[TimeSlotDefinition] = field(default_factory=lambda: list(DEFAULT_TIME_SLOTS))
    day_categories: Dict[Weekday, str] = field(default_factory=_default_day_mapping)
    # Built-in categories keyed by category id ("home", "office")
    built_in_locations: Dict[str, SavedLocation] = field(default_factory=dict)
    custom_locations: List[SavedLocation] = field(default_factory=list)
    timezone: str = "UTC"

    def ordered_locations(self) -> List[SavedLocation]:
        ordered = [self.built_in_locations[key] for key in (HOME, OFFICE) if key in self.built_in_locations]
        ordered.extend(sorted(self.custom_locations, key=lambda loc: (loc.created_at, loc.category_id)))
        return ordered

    def tzinfo(self):
        try:
            return ZoneInfo(self.timezone)
        except (KeyError, ValueError):
            logger.warning("Unknown timezone %r, using UTC", self.timezone)
            return timezone.utc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timezone": self.timezone,
            "time_slots": [s.to_dict() for s in self.time_slots],
            "day_categories": {d.name.lower(): cat for d, cat in self.day_categories.items()},
            "built_in_locations": {k: v.to_dict() for k, v in self.built_in_locations.items()},
            "custom_locations": [loc.to_dict() for loc in self.custom_locations],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextSettings":
        settings = cls()
        if "time_slots" in data:
            settings.time_slots = [TimeSlotDefinition.from_dict(s) for s in data["time_slots"]]
        if "day_categories" in data:
            mapping = {}
            for key, category in data["day_categories"].items():
                day = Weekday(int(key)) if str(key).isdigit() else Weekday[str(key).upper()]
                mapping[day] = category
            settings.day_categories = mapping
        settings.built_in_locations = {
            key: SavedLocation.from_dict(value)
            for key, value in data.get("built_in_locations", {}).items()
        }
        settings.custom_locations = [SavedLocation.from_dict(v) for v in data.get("custom_locations", [])]
        settings.timezone = data.get("timezone", settings.timezone)
        return settings

    @classmethod
    def load(cls, path: Path | str) -> "ContextSettings":
        """Load settings from a JSON file; missing file means defaults."""
        path = Path(path)
        if not path.exists():
            return default_settings()
        with path.open("r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def save(self, path: Path | str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        os.replace(str(tmp), str(path))


def default_settings(tz: Optional[str] = None) -> ContextSettings:
    return ContextSettings(timezone=tz or "UTC")


# ----------------------
# Lookups
# ----------------------

def great_circle_distance(a: Coordinate, b: Coordinate) -> float:
    """Haversine distance in metres."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def time_slot_for(t: TimeOfDay, slots: List[TimeSlotDefinition]) -> str:
    for slot in slots:
        if slot.contains(t):
            return slot.id
    if not slots:
        return UNKNOWN
    # Gaps in user configuration resolve to a stable slot
    return min(slot.id for slot in slots)


def day_category_for(weekday: Weekday | int, mapping: Dict[Weekday, str]) -> str:
    try:
        day = Weekday(int(weekday))
    except (TypeError, ValueError):
        return UNKNOWN
    category = mapping.get(day)
    if category:
        return category
    return WEEKEND if day >= Weekday.SATURDAY else WEEKDAY


def location_category_for(coordinate: Optional[Coordinate], locations: List[SavedLocation]) -> str:
    """First saved location (in the given order) whose radius covers the coordinate."""
    if coordinate is None:
        return UNKNOWN
    for location in locations:
        try:
            distance = great_circle_distance(coordinate, location.coordinate)
        except (TypeError, ValueError):
            continue
        if distance <= max(location.radius_m, MIN_RADIUS_M):
            return location.category_id
    return UNKNOWN


def resolve_context(
    now: datetime,
    weekday: Weekday | int,
    last_location: Optional[Coordinate],
    settings: ContextSettings,
) -> RoutineContext:
    """Resolve the routine context for a moment in time.

    Aware datetimes are converted to the configured timezone before the
    time slot lookup; naive ones are taken as local wall-clock time.
    """
    local = now.astimezone(settings.tzinfo()) if now.tzinfo is not None else now
    return RoutineContext(
        time_slot=time_slot_for(TimeOfDay.from_datetime(local), settings.time_slots),
        day_category=day_category_for(weekday, settings.day_categories),
        location_category=location_category_for(last_location, settings.ordered_locations()),
    )


class SystemContextProvider:
    """Reads clock and last known location, then resolves the context."""

    def __init__(
        self,
        settings: ContextSettings,
        clock: Optional[Callable[[], datetime]] = None,
        location_source: Optional[Callable[[], Optional[Coordinate]]] = None,
    ):
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.location_source = location_source or (lambda: None)

    def now(self) -> datetime:
        return self.clock()

    def current_context(
        self,
        now: Optional[datetime] = None,
        location: Optional[Coordinate] = None,
    ) -> RoutineContext:
        moment = now or self.now()
        local = moment.astimezone(self.settings.tzinfo()) if moment.tzinfo is not None else moment
        coordinate = location if location is not None else self.location_source()
        context = resolve_context(moment, local.weekday(), coordinate, self.settings)
        logger.debug("Resolved context %s", context)
        return context
