"""
Shared fixtures for the campus emissions tests.

Record sources here are in-memory stand-ins for the paginated storage
collaborator; they never pre-filter, so the aggregator's own predicate is
always exercised.
"""
import pytest

from carbon_core.aggregator import aggregate
from carbon_core.data import RecordPage, SourceUnavailable


class ListRecordSource:
    """Serves a fixed list of rows page by page and records every call."""

    def __init__(self, rows):
        self.rows = list(rows)
        self.calls = []

    async def fetch_page(self, filt, offset, limit):
        self.calls.append((filt, offset, limit))
        page = self.rows[offset:offset + limit]
        return RecordPage(rows=page, has_more=offset + limit < len(self.rows))


class FailingSource:
    """Raises the given exception on every page request."""

    def __init__(self, exc):
        self.exc = exc

    async def fetch_page(self, filt, offset, limit):
        raise self.exc


def make_row(campus="Ganesha", building="Lab", room="R1", device="AC", year=2024, month=1, emission=1.0):
    return {
        "campus": campus,
        "building": building,
        "room": room,
        "device": device,
        "year": year,
        "month": month,
        "emission": emission,
    }


CAMPUS_ROWS = [
    make_row("Ganesha", "Lab", "R1", "AC", 2023, 1, 10.0),
    make_row("Ganesha", "Lab", "R2", "Lamp", 2023, 2, 5.0),
    make_row("Ganesha", "Library", "L1", "PC", 2024, 3, 7.5),
    make_row("Jatinangor", "GKU", "G1", "AC", 2024, 1, 4.25),
    make_row("Jatinangor", "GKU", "G2", "PC", 2023, 5, 2.0),
]


@pytest.fixture
def campus_rows():
    """A small two-campus dataset spanning 2023 and 2024."""
    return [dict(row) for row in CAMPUS_ROWS]


@pytest.fixture
def campus_source(campus_rows):
    return ListRecordSource(campus_rows)


@pytest.fixture
def counting_fetch(campus_source):
    """An aggregation fetcher that logs (dimensions, filter) for every call."""
    calls = []

    async def fetch(filt, dimensions):
        calls.append((tuple(dimensions), filt))
        return await aggregate(campus_source, filt, dimensions)

    fetch.calls = calls
    return fetch


@pytest.fixture
def unavailable_source():
    return FailingSource(SourceUnavailable("storage timed out"))
