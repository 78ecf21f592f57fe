"""Drill-down navigation over the spatial and time axes of the dashboard.

The navigator is the cross product of two small state machines::

    space: CampusOverview -> BuildingOverview(campus) -> RoomOverview(campus, building)
    time:  YearOverview -> MonthOverview(year)

Every transition is synchronous. Fetching the data a state needs happens as
a side effect: requests are tagged with the ``NavigationState`` they were
issued for, and a response is applied only while that state is still
current (last request wins). Room-level totals are never fetched on their
own; they arrive as ``children`` of the building-level aggregation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from carbon_core.aggregator import AggregationOutcome, GroupKey, aggregate
from carbon_core.data import RecordSource, SourceUnavailable
from carbon_core.filters import ALL, DimensionFilter


logger = logging.getLogger(__name__)

SPACE = "space"
TIME = "time"
AXES = (SPACE, TIME)

Fetch = Callable[[DimensionFilter, Tuple[str, ...]], Awaitable[AggregationOutcome]]
UpdateCallback = Callable[[str, "DrillNavigator"], None]


class TimeGranularity(str, Enum):
    YEAR = "year"
    MONTH = "month"


class SpatialDepth(IntEnum):
    CAMPUS = 0
    BUILDING = 1
    ROOM = 2


class InvalidSelection(Exception):
    """A selection that the current data does not offer (usually a stale UI event)."""

    def __init__(self, axis: str, value: object, reason: str):
        super().__init__(f"Cannot select {value!r} on the {axis} axis: {reason}")
        self.axis = axis
        self.value = value
        self.reason = reason


@dataclass(frozen=True)
class NavigationState:
    time_granularity: TimeGranularity = TimeGranularity.YEAR
    selected_year: str = ALL
    spatial_depth: SpatialDepth = SpatialDepth.CAMPUS
    selected_campus: Optional[str] = None
    selected_building: Optional[str] = None
    selected_room: Optional[str] = None

    def to_filter(self) -> DimensionFilter:
        return DimensionFilter(
            campus=self.selected_campus,
            year=None if self.selected_year == ALL else int(self.selected_year),
            building=self.selected_building if self.spatial_depth >= SpatialDepth.BUILDING else None,
            room=self.selected_room if self.spatial_depth == SpatialDepth.ROOM else None,
        )


@dataclass(frozen=True)
class AggregationRequest:
    axis: str
    dimensions: Tuple[str, ...]
    filter: DimensionFilter
    tag: NavigationState

    @property
    def key(self) -> Tuple[Tuple[str, ...], DimensionFilter]:
        return self.dimensions, self.filter


@dataclass(frozen=True)
class ViewData:
    """What the view layer renders for one axis."""

    axis: str
    status: str
    request: AggregationRequest
    values: Dict[GroupKey, float]
    outcome: Optional[AggregationOutcome] = None
    error: Optional[Exception] = None

    @property
    def skipped_count(self) -> int:
        return self.outcome.skipped_count if self.outcome is not None else 0


def request_for(axis: str, state: NavigationState) -> AggregationRequest:
    """The aggregation an axis needs to display ``state``."""
    year = None if state.selected_year == ALL else int(state.selected_year)
    if axis == SPACE:
        if state.spatial_depth == SpatialDepth.CAMPUS:
            return AggregationRequest(SPACE, ("campus",), DimensionFilter(year=year), state)
        return AggregationRequest(
            SPACE,
            ("building", "room"),
            DimensionFilter(campus=state.selected_campus, year=year),
            state,
        )
    if axis == TIME:
        if state.time_granularity == TimeGranularity.YEAR:
            return AggregationRequest(TIME, ("year",), DimensionFilter(campus=state.selected_campus), state)
        return AggregationRequest(
            TIME,
            ("month",),
            DimensionFilter(campus=state.selected_campus, year=year),
            state,
        )
    raise ValueError(f"Unknown axis: {axis!r}")


def _find_key(keys: Any, value: object) -> Optional[GroupKey]:
    """Match a clicked value against result keys, tolerating ``2024`` vs ``"2024"``."""
    for key in keys:
        if key == value or str(key) == str(value):
            return key
    return None


class DrillNavigator:
    def __init__(
        self,
        fetch: Fetch,
        *,
        on_update: Optional[UpdateCallback] = None,
        initial: Optional[NavigationState] = None,
    ):
        self._fetch = fetch
        self._on_update = on_update
        self._state = initial or NavigationState()
        self._results: Dict[Tuple[Tuple[str, ...], DimensionFilter], AggregationOutcome] = {}
        self._errors: Dict[str, Tuple[AggregationRequest, Exception]] = {}
        self._inflight: Dict[str, AggregationRequest] = {}
        self._queued: List[AggregationRequest] = []
        self._tasks: Set["asyncio.Task[None]"] = set()
        self.last_rejection: Optional[InvalidSelection] = None

    @classmethod
    def for_source(cls, source: RecordSource, **kwargs: Any) -> "DrillNavigator":
        async def fetch(filt: DimensionFilter, dimensions: Tuple[str, ...]) -> AggregationOutcome:
            return await aggregate(source, filt, dimensions)

        return cls(fetch, **kwargs)

    @property
    def state(self) -> NavigationState:
        return self._state

    def current_filter(self) -> DimensionFilter:
        return self._state.to_filter()

    # ---------------- Views ----------------
    def result_for(self, axis: str) -> Optional[AggregationOutcome]:
        return self._results.get(request_for(axis, self._state).key)

    def view(self, axis: str) -> ViewData:
        request = request_for(axis, self._state)
        outcome = self._results.get(request.key)
        if outcome is not None:
            values = outcome.totals()
            if axis == SPACE and self._state.spatial_depth >= SpatialDepth.BUILDING and self._state.selected_building:
                values = outcome.children_of(self._state.selected_building)
            return ViewData(axis, "ready", request, values, outcome=outcome)
        failure = self._errors.get(axis)
        if failure is not None and failure[0].tag == self._state:
            return ViewData(axis, "error", request, {}, error=failure[1])
        inflight = self._inflight.get(axis)
        if inflight is not None and inflight.tag == self._state:
            return ViewData(axis, "loading", request, {})
        return ViewData(axis, "idle", request, {})

    # ---------------- Transitions ----------------
    def open(self) -> NavigationState:
        """Issue the requests the current state still needs (view mount, or a retry after a failure)."""
        self._errors.clear()
        self._refresh()
        return self._state

    def select(self, value: object, *, axis: str = SPACE) -> NavigationState:
        try:
            new_state = self._next_state(axis, value)
        except InvalidSelection as exc:
            self.last_rejection = exc
            logger.info("Rejected selection: %s", exc)
            return self._state
        self.last_rejection = None
        return self._transition(new_state)

    def back(self, *, axis: Optional[str] = None) -> NavigationState:
        state = self._state
        if axis is None:
            axis = SPACE if state.spatial_depth > SpatialDepth.CAMPUS else TIME

        if axis == SPACE:
            if state.spatial_depth == SpatialDepth.ROOM:
                return self._transition(
                    replace(state, spatial_depth=SpatialDepth.BUILDING, selected_building=None, selected_room=None)
                )
            if state.spatial_depth == SpatialDepth.BUILDING:
                self._evict(request_for(SPACE, state).dimensions)
                return self._transition(replace(state, spatial_depth=SpatialDepth.CAMPUS, selected_campus=None))
            return state

        if axis == TIME:
            if state.time_granularity == TimeGranularity.MONTH:
                self._evict(request_for(TIME, state).dimensions)
                previous = replace(state, time_granularity=TimeGranularity.YEAR, selected_year=ALL)
                # The year-level view is fetched again rather than served from cache.
                self._results.pop(request_for(TIME, previous).key, None)
                return self._transition(previous)
            return state

        logger.info("Ignoring back() on unknown axis %r", axis)
        return state

    def _next_state(self, axis: str, value: object) -> NavigationState:
        state = self._state
        if axis not in AXES:
            raise InvalidSelection(axis, value, "unknown axis")
        if axis == TIME and state.time_granularity == TimeGranularity.MONTH:
            raise InvalidSelection(axis, value, "month level has no deeper view")

        outcome = self.result_for(axis)
        if outcome is None:
            raise InvalidSelection(axis, value, "no data loaded for the current view")

        if axis == TIME:
            key = _find_key(outcome.result.keys(), value)
            if key is None:
                raise InvalidSelection(axis, value, "year not present in the latest result")
            return replace(state, time_granularity=TimeGranularity.MONTH, selected_year=str(key))

        if state.spatial_depth == SpatialDepth.CAMPUS:
            key = _find_key(outcome.result.keys(), value)
            if key is None:
                raise InvalidSelection(axis, value, "campus not present in the latest result")
            return replace(state, spatial_depth=SpatialDepth.BUILDING, selected_campus=str(key))

        if state.spatial_depth == SpatialDepth.BUILDING:
            key = _find_key(outcome.result.keys(), value)
            if key is None:
                raise InvalidSelection(axis, value, "building not present in the latest result")
            return replace(state, spatial_depth=SpatialDepth.ROOM, selected_building=str(key), selected_room=None)

        rooms = outcome.children_of(state.selected_building) if state.selected_building else {}
        key = _find_key(rooms.keys(), value)
        if key is None:
            raise InvalidSelection(axis, value, f"room not present in building {state.selected_building!r}")
        return replace(state, selected_room=str(key))

    def _evict(self, dimensions: Tuple[str, ...]) -> None:
        """Drop every cached result at one level, whatever filter it was fetched for."""
        for key in [k for k in self._results if k[0] == dimensions]:
            del self._results[key]

    def _transition(self, new_state: NavigationState) -> NavigationState:
        if new_state != self._state:
            logger.debug("Navigation %s -> %s", self._state, new_state)
            self._state = new_state
            self._refresh()
        return self._state

    # ---------------- Fetching ----------------
    def _refresh(self) -> None:
        for axis in AXES:
            request = request_for(axis, self._state)
            if request.key in self._results:
                continue
            inflight = self._inflight.get(axis)
            if inflight is not None and inflight == request:
                continue
            self._inflight[axis] = request
            self._queued.append(request)
        self._dispatch()

    def _dispatch(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        queued, self._queued = self._queued, []
        for request in queued:
            if request.tag != self._state:
                continue
            task = loop.create_task(self._run(request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def settle(self) -> None:
        """Dispatch queued requests and wait until nothing is in flight."""
        self._dispatch()
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
            self._dispatch()

    async def _run(self, request: AggregationRequest) -> None:
        try:
            outcome = await self._fetch(request.filter, request.dimensions)
        except SourceUnavailable as exc:
            self._apply_failure(request, exc)
            return
        except Exception as exc:
            logger.exception("Unexpected failure fetching the %s view for %s", request.axis, request.tag)
            self._apply_failure(request, exc)
            return
        self._apply(request, outcome)

    def _apply(self, request: AggregationRequest, outcome: AggregationOutcome) -> None:
        if request.tag != self._state:
            logger.debug("Discarding stale %s response for %s", request.axis, request.tag)
            return
        self._results[request.key] = outcome
        self._errors.pop(request.axis, None)
        if self._inflight.get(request.axis) == request:
            del self._inflight[request.axis]
        self._notify(request.axis)

    def _apply_failure(self, request: AggregationRequest, exc: Exception) -> None:
        if request.tag != self._state:
            logger.debug("Discarding stale %s failure for %s: %s", request.axis, request.tag, exc)
            return
        logger.warning("Aggregation for the %s view failed: %s", request.axis, exc)
        self._errors[request.axis] = (request, exc)
        if self._inflight.get(request.axis) == request:
            del self._inflight[request.axis]
        self._notify(request.axis)

    def _notify(self, axis: str) -> None:
        if self._on_update is not None:
            self._on_update(axis, self)
