from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

ALL = "All"


def is_unconstrained(value: object) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and value.strip() in {"", ALL}


@dataclass(frozen=True)
class DimensionFilter:
    """Equality constraints narrowing which records get folded.

    ``None`` and the ``"All"`` sentinel both mean "no constraint".
    """

    campus: Optional[str] = None
    year: Optional[int] = None
    building: Optional[str] = None
    room: Optional[str] = None

    def year_value(self) -> Optional[int]:
        return _as_year(self.year)

    def matches(self, record: Any) -> bool:
        if not is_unconstrained(self.campus) and record.campus != self.campus:
            return False
        year = self.year_value()
        if year is not None and record.year != year:
            return False
        if not is_unconstrained(self.building) and record.building != self.building:
            return False
        if not is_unconstrained(self.room) and record.room != self.room:
            return False
        return True

    def as_query(self) -> dict:
        """Constraint values with the ``"All"`` sentinel filled in, for payloads."""
        year = self.year_value()
        return {
            "campus": ALL if is_unconstrained(self.campus) else self.campus,
            "year": ALL if year is None else year,
            "building": None if is_unconstrained(self.building) else self.building,
            "room": None if is_unconstrained(self.room) else self.room,
        }


def _as_text(value: object) -> Optional[str]:
    if is_unconstrained(value):
        return None
    return str(value).strip()


def _as_year(value: object) -> Optional[int]:
    if is_unconstrained(value):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def normalize_filter(raw: Optional[Mapping[str, Any]] = None) -> DimensionFilter:
    raw = raw or {}
    return DimensionFilter(
        campus=_as_text(raw.get("campus")),
        year=_as_year(raw.get("year")),
        building=_as_text(raw.get("building")),
        room=_as_text(raw.get("room")),
    )
