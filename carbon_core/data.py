from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, Union

import pandas as pd

from carbon_core.filters import DimensionFilter, is_unconstrained


logger = logging.getLogger(__name__)

DATA_DIR = Path(os.environ.get("CARBON_DATA_DIR") or Path(__file__).resolve().parents[1] / "data")
FILE_GLOBS = ("emissions*.csv", "emissions*.xlsx")

PAGE_SIZE = 1000
ROUND_DIGITS = 3

TEXT_DIMENSIONS = ("campus", "building", "room", "device")
TIME_DIMENSIONS = ("year", "month")
DIMENSIONS = ("campus", "year", "month", "building", "room", "device")

RECORD_COLUMNS = {
    "campus": "campus",
    "campus_name": "campus",
    "Campus": "campus",
    "building": "building",
    "building_name": "building",
    "Building": "building",
    "room": "room",
    "room_name": "room",
    "Room": "room",
    "device": "device",
    "device_name": "device",
    "Device": "device",
    "year": "year",
    "Year": "year",
    "month": "month",
    "Month": "month",
    "emission": "emission",
    "total_emission": "emission",
    "Emission": "emission",
    "Emission (kg CO2e)": "emission",
}

_MISSING_TOKENS = {"nan", "none", "null", "<na>"}


class SourceUnavailable(Exception):
    """The record source could not be reached; the caller decides whether to retry."""


def get_source_files(data_dir: Optional[Path] = None) -> List[Path]:
    base = Path(data_dir) if data_dir is not None else DATA_DIR
    files: List[Path] = []
    for pattern in FILE_GLOBS:
        files.extend(base.glob(pattern))
    return sorted(files)


def file_signature(files: List[Path]) -> Tuple[Tuple[str, float], ...]:
    return tuple((str(f), f.stat().st_mtime) for f in files)


def drop_duplicate_columns(df: pd.DataFrame) -> pd.DataFrame:
    return df.loc[:, ~df.columns.duplicated()]


def numericize(df: pd.DataFrame, cols: Iterable[str]) -> pd.DataFrame:
    for col in cols:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


def coerce_str_safe(df: pd.DataFrame, cols: Iterable[str]) -> pd.DataFrame:
    for col in cols:
        if col in df.columns:
            series = df[col]
            if isinstance(series, pd.DataFrame):
                series = series.iloc[:, 0]
            series = series.astype("string").str.strip()
            series = series.replace({"nan": pd.NA, "None": pd.NA, "": pd.NA})
            df[col] = series
    return df


def _is_missing(value: object) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def normalize_key(value: object) -> Optional[str]:
    if _is_missing(value):
        return None
    s = str(value).strip()
    if not s or s.lower() in _MISSING_TOKENS:
        return None
    return s


def _as_int(value: object) -> Optional[int]:
    if _is_missing(value) or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or not number.is_integer():
        return None
    return int(number)


def _as_month(value: object) -> Optional[int]:
    month = _as_int(value)
    if month is None or not 1 <= month <= 12:
        return None
    return month


def _as_emission(value: object) -> Optional[float]:
    if _is_missing(value) or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def round_half_up(value: object, ndigits: int = 0) -> Optional[float]:
    if value is None or (not isinstance(value, Decimal) and _is_missing(value)):
        return None
    q = Decimal(10) ** -ndigits
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return float(amount.quantize(q, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class EmissionRecord:
    campus: Optional[str] = None
    building: Optional[str] = None
    room: Optional[str] = None
    device: Optional[str] = None
    year: Optional[int] = None
    month: Optional[int] = None
    emission: Optional[float] = None

    @classmethod
    def from_row(cls, row: object) -> Optional["EmissionRecord"]:
        """Normalize a raw source row; returns ``None`` when the row has no usable shape."""
        if isinstance(row, EmissionRecord):
            return row
        if not isinstance(row, Mapping):
            return None
        values: Dict[str, Any] = {}
        for key, value in row.items():
            name = RECORD_COLUMNS.get(str(key))
            if name is not None and name not in values:
                values[name] = value
        return cls(
            campus=normalize_key(values.get("campus")),
            building=normalize_key(values.get("building")),
            room=normalize_key(values.get("room")),
            device=normalize_key(values.get("device")),
            year=_as_int(values.get("year")),
            month=_as_month(values.get("month")),
            emission=_as_emission(values.get("emission")),
        )

    def value_of(self, dimension: str) -> Union[str, int, None]:
        return getattr(self, dimension)


@dataclass
class RecordPage:
    rows: List[Any] = field(default_factory=list)
    has_more: bool = False

    @classmethod
    def coerce(cls, raw: object) -> "RecordPage":
        if isinstance(raw, RecordPage):
            return raw
        if isinstance(raw, Mapping):
            has_more = raw.get("has_more", raw.get("hasMore", False))
            return cls(rows=list(raw.get("rows") or []), has_more=bool(has_more))
        raise TypeError(f"Unsupported page type: {type(raw).__name__}")


class RecordSource(Protocol):
    async def fetch_page(self, filt: DimensionFilter, offset: int, limit: int) -> RecordPage:
        ...


# ---------------- Loaders ----------------
def _read_emission_file(path: Path) -> pd.DataFrame:
    if path.suffix.lower() == ".xlsx":
        return pd.read_excel(path, dtype=str)
    return pd.read_csv(path, dtype=str)


def load_emission_frame(files_sig: Tuple[Tuple[str, float], ...]) -> pd.DataFrame:
    frames: List[pd.DataFrame] = []
    for name, _ in files_sig:
        path = Path(name)
        df = _read_emission_file(path)
        df = df.rename(columns=RECORD_COLUMNS)
        df = drop_duplicate_columns(df)
        df = df[[c for c in DIMENSIONS + ("emission",) if c in df.columns]].copy()
        df = coerce_str_safe(df, TEXT_DIMENSIONS)
        df = numericize(df, TIME_DIMENSIONS + ("emission",))
        for col in TIME_DIMENSIONS:
            if col in df.columns:
                finite = df[col].where(df[col].abs() != float("inf"))
                df[col] = finite.where(finite == finite.round()).astype("Int64")
        df["source_file"] = path.name
        frames.append(df)
    if not frames:
        return pd.DataFrame(columns=list(DIMENSIONS) + ["emission"])
    return pd.concat(frames, ignore_index=True)


@lru_cache(maxsize=4)
def _load_emissions_data_cached(files_sig: Tuple[Tuple[str, float], ...]) -> Dict[str, object]:
    records = load_emission_frame(files_sig)
    logger.info("Loaded %d emission rows from %d file(s)", len(records), len(files_sig))
    return {
        "files": [Path(name).name for name, _ in files_sig],
        "records": records,
    }


def load_emissions_data(data_dir: Optional[Path] = None) -> Dict[str, object]:
    files = get_source_files(data_dir)
    if not files:
        logger.warning("No emission files found under %s", data_dir or DATA_DIR)
        return {"files": [], "records": pd.DataFrame(columns=list(DIMENSIONS) + ["emission"])}
    return _load_emissions_data_cached(file_signature(files))


class FrameRecordSource:
    """Paginated record source over an in-memory emissions frame."""

    def __init__(self, frame: pd.DataFrame):
        self._frame = frame.reset_index(drop=True) if frame is not None else pd.DataFrame()
        self._last: Optional[Tuple[DimensionFilter, pd.DataFrame]] = None

    @classmethod
    def from_data_dir(cls, data_dir: Optional[Path] = None) -> "FrameRecordSource":
        data_ctx = load_emissions_data(data_dir)
        return cls(data_ctx.get("records", pd.DataFrame()))

    def __len__(self) -> int:
        return len(self._frame)

    def _filtered(self, filt: DimensionFilter) -> pd.DataFrame:
        if self._last is not None and self._last[0] == filt:
            return self._last[1]
        df = self._frame
        if not df.empty:
            mask = pd.Series(True, index=df.index)
            for col in ("campus", "building", "room"):
                value = getattr(filt, col)
                if is_unconstrained(value):
                    continue
                if col not in df.columns:
                    mask &= False
                    continue
                mask &= df[col].eq(value).fillna(False).astype(bool)
            year = filt.year_value()
            if year is not None:
                if "year" in df.columns:
                    mask &= df["year"].eq(year).fillna(False).astype(bool)
                else:
                    mask &= False
            df = df[mask]
        self._last = (filt, df)
        return df

    async def fetch_page(self, filt: DimensionFilter, offset: int, limit: int) -> RecordPage:
        df = self._filtered(filt)
        page = df.iloc[offset : offset + limit]
        rows = page.drop(columns=["source_file"], errors="ignore").to_dict(orient="records")
        return RecordPage(rows=rows, has_more=offset + limit < len(df))
