"""Fold paginated emission records into nested, rounding-stable totals.

Totals are accumulated exactly (``Decimal`` over each value's decimal string)
and rounded once, at the end, half away from zero to ``ROUND_DIGITS``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

from carbon_core.data import (
    DIMENSIONS,
    PAGE_SIZE,
    ROUND_DIGITS,
    EmissionRecord,
    RecordPage,
    RecordSource,
    SourceUnavailable,
    round_half_up,
)
from carbon_core.filters import DimensionFilter


logger = logging.getLogger(__name__)

GroupKey = Union[str, int]

_TRANSPORT_ERRORS = (OSError, ConnectionError, asyncio.TimeoutError)


@dataclass(frozen=True)
class GroupTotal:
    total: float
    children: Optional[Dict[GroupKey, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"total": self.total}
        if self.children is not None:
            out["children"] = dict(self.children)
        return out


AggregationResult = Dict[GroupKey, GroupTotal]


@dataclass(frozen=True)
class AggregationOutcome:
    result: AggregationResult = field(default_factory=dict)
    skipped_count: int = 0
    total_sum: float = 0.0
    row_count: int = 0
    dimensions: Tuple[str, ...] = ()

    def totals(self) -> Dict[GroupKey, float]:
        return {key: group.total for key, group in self.result.items()}

    def children_of(self, key: GroupKey) -> Dict[GroupKey, float]:
        group = self.result.get(key)
        if group is None or group.children is None:
            return {}
        return dict(group.children)

    def to_dict(self) -> Dict[GroupKey, Dict[str, Any]]:
        return {key: group.to_dict() for key, group in self.result.items()}


def validate_dimensions(group_dimensions: Optional[Sequence[str]]) -> Tuple[str, ...]:
    dims = tuple(group_dimensions or ())
    if len(dims) > 2:
        raise ValueError(f"At most two group dimensions are supported, got {list(dims)}")
    unknown = [d for d in dims if d not in DIMENSIONS]
    if unknown:
        raise ValueError(f"Unknown group dimension(s): {unknown}")
    return dims


async def iter_pages(
    source: RecordSource,
    filt: DimensionFilter,
    *,
    page_size: int = PAGE_SIZE,
) -> AsyncIterator[List[Any]]:
    """Yield row batches until the source signals the end of data.

    The end is an empty page, ``has_more=False``, or a page shorter than
    ``page_size``. Transport errors surface as ``SourceUnavailable``.
    """
    offset = 0
    while True:
        try:
            raw = await source.fetch_page(filt, offset, page_size)
        except SourceUnavailable:
            raise
        except _TRANSPORT_ERRORS as exc:
            raise SourceUnavailable(f"Record source failed at offset {offset}: {exc}") from exc
        page = RecordPage.coerce(raw)
        if not page.rows:
            return
        yield page.rows
        if not page.has_more or len(page.rows) < page_size:
            return
        offset += page_size


def _rounded(amount: Decimal) -> float:
    return round_half_up(amount, ROUND_DIGITS) or 0.0


async def aggregate(
    source: RecordSource,
    filt: Optional[DimensionFilter] = None,
    group_dimensions: Optional[Sequence[str]] = None,
    *,
    page_size: int = PAGE_SIZE,
) -> AggregationOutcome:
    dims = validate_dimensions(group_dimensions)
    filt = filt or DimensionFilter()

    totals: Dict[GroupKey, Decimal] = {}
    nested: Dict[GroupKey, Dict[GroupKey, Decimal]] = {}
    grand_total = Decimal(0)
    skipped = 0
    folded = 0

    async for rows in iter_pages(source, filt, page_size=page_size):
        for row in rows:
            record = EmissionRecord.from_row(row)
            if record is None:
                skipped += 1
                logger.debug("Skipping unreadable row: %r", row)
                continue
            if not filt.matches(record):
                continue
            if record.emission is None:
                skipped += 1
                logger.debug("Skipping row without a valid emission: %r", row)
                continue

            outer = record.value_of(dims[0]) if dims else None
            if dims and outer is None:
                skipped += 1
                logger.debug("Skipping row missing %s: %r", dims[0], row)
                continue

            amount = Decimal(str(record.emission))
            grand_total += amount
            folded += 1
            if not dims:
                continue

            totals[outer] = totals.get(outer, Decimal(0)) + amount
            if len(dims) == 1:
                continue
            bucket = nested.setdefault(outer, {})
            inner = record.value_of(dims[1])
            if inner is None:
                # Still counted in the outer total.
                skipped += 1
                logger.debug("Excluding row missing %s from %s=%r: %r", dims[1], dims[0], outer, row)
                continue
            bucket[inner] = bucket.get(inner, Decimal(0)) + amount

    if skipped:
        logger.warning(
            "Aggregation by %s skipped %d row(s) with missing or invalid fields (filter=%s)",
            list(dims) or "total",
            skipped,
            filt.as_query(),
        )

    result: AggregationResult = {}
    for key, amount in totals.items():
        children = None
        if len(dims) == 2:
            children = {inner: _rounded(value) for inner, value in nested.get(key, {}).items()}
        result[key] = GroupTotal(total=_rounded(amount), children=children)

    return AggregationOutcome(
        result=result,
        skipped_count=skipped,
        total_sum=_rounded(grand_total),
        row_count=folded,
        dimensions=dims,
    )
