from __future__ import annotations

from typing import Any, Dict

import pandas as pd

from carbon_core.data import DIMENSIONS


def compute_debug(data_ctx: Dict[str, Any]) -> Dict[str, Any]:
    records: pd.DataFrame = data_ctx.get("records", pd.DataFrame()).copy()
    payload: Dict[str, Any] = {
        "files": list(data_ctx.get("files", []) or []),
        "row_counts": {"records": int(len(records))},
        "missing_values": {},
        "invalid_emission_rows": 0,
        "year_coverage": [],
        "rows_per_file": [],
    }
    if records.empty:
        return payload

    payload["missing_values"] = {
        col: int(records[col].isna().sum()) if col in records.columns else int(len(records))
        for col in DIMENSIONS + ("emission",)
    }
    if "emission" in records.columns:
        emission = pd.to_numeric(records["emission"], errors="coerce")
        payload["invalid_emission_rows"] = int((emission.isna() | (emission < 0)).sum())

    if {"campus", "year"}.issubset(records.columns):
        cov = (
            records.dropna(subset=["campus", "year"])
            .groupby("campus")["year"]
            .agg(["min", "max", "nunique"])
            .reset_index()
            .rename(columns={"min": "first_year", "max": "last_year", "nunique": "years_present"})
        )
        payload["year_coverage"] = [
            {
                "campus": str(r["campus"]),
                "first_year": int(r["first_year"]),
                "last_year": int(r["last_year"]),
                "years_present": int(r["years_present"]),
            }
            for r in cov.to_dict(orient="records")
        ]

    if "source_file" in records.columns:
        per_file = records["source_file"].value_counts().sort_index()
        payload["rows_per_file"] = [{"file": str(name), "rows": int(count)} for name, count in per_file.items()]
    return payload
