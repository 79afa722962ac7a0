#!/usr/bin/env python3
"""records.py

ZonalRecord: the terminal unit of the pipeline, plus flattening and field
projection helpers.

A missing value is None, never a dropped record. Output tables therefore
always have one row per (region, period), which keeps downstream joins safe.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd


@dataclass(frozen=True)
class ZonalRecord:
    region_id: str
    region_name: str
    statistic: str
    value: Optional[float]
    period: Optional[int] = None
    variable: Optional[str] = None

    def tagged(self, period: Optional[int] = None, variable: Optional[str] = None) -> "ZonalRecord":
        changes: Dict[str, Any] = {}
        if period is not None:
            changes["period"] = period
        if variable is not None:
            changes["variable"] = variable
        return replace(self, **changes) if changes else self


def clean_value(x: Any) -> Optional[float]:
    """Float, or None for missing/NaN/inf."""
    if x is None:
        return None
    v = float(x)
    if math.isnan(v) or math.isinf(v):
        return None
    return v


def flatten(nested: Mapping[int, Sequence[ZonalRecord]]) -> List[ZonalRecord]:
    """Flatten {period: records} into one list.

    Periods come out ascending; records keep their order inside a period
    (region-catalog order) and are tagged with their period.
    """
    out: List[ZonalRecord] = []
    for period in sorted(nested):
        out.extend(r.tagged(period=period) for r in nested[period])
    return out


# -----------------------------------------------------------------------------
# Field projection (what an export sink sees)
# -----------------------------------------------------------------------------

FIELD_ALIASES: Dict[str, str] = {
    "region": "region_name",
    "name": "region_name",
    "year": "period",
    "stat": "statistic",
    "statistic_name": "statistic",
    "statistic_value": "value",
}


def project(records: Iterable[ZonalRecord], fields: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
    """Records as dicts restricted to `fields` (all fields when None).

    Field names may use aliases: `statistic_value` reads `value`, `year`
    reads `period`, etc. Output keys keep the caller's names.
    """
    rows: List[Dict[str, Any]] = []
    for rec in records:
        d = asdict(rec)
        if fields is None:
            rows.append(d)
            continue
        row: Dict[str, Any] = {}
        for f in fields:
            key = FIELD_ALIASES.get(f, f)
            if key not in d:
                raise KeyError(f"Unknown record field '{f}'. Available: {sorted(d) + sorted(FIELD_ALIASES)}")
            row[f] = d[key]
        rows.append(row)
    return rows


def records_to_frame(records: Iterable[ZonalRecord], fields: Optional[Sequence[str]] = None) -> pd.DataFrame:
    records = list(records)
    rows = project(records, fields)
    columns = list(fields) if fields is not None else list(ZonalRecord.__dataclass_fields__)
    df = pd.DataFrame(rows, columns=columns)
    # nullable ints so static (None) periods don't turn the column into floats
    for c in columns:
        if FIELD_ALIASES.get(c, c) == "period":
            df[c] = df[c].astype("Int64")
    return df
