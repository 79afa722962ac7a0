#!/usr/bin/env python3
"""export.py

Hand-off point for finished record streams.

Persistence belongs to the sink. The pipeline's only promise is the record
shape: a flat list of ZonalRecords projected to the caller's fields, with
None for undefined values.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from regionstats.pipeline.records import ZonalRecord, project, records_to_frame

log = logging.getLogger(__name__)


class ExportSink(Protocol):
    def write(self, records: Sequence[ZonalRecord], fields: Optional[Sequence[str]], destination: str) -> None:
        ...


class MemorySink:
    """Keeps projected rows per destination. Handy for tests and notebooks."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}

    def write(self, records, fields, destination):
        self.tables[destination] = project(records, fields)


class CsvSink:
    """Writes one CSV per destination label under `out_dir`."""

    def __init__(self, out_dir: Path, overwrite: bool = False):
        self.out_dir = Path(out_dir)
        self.overwrite = overwrite

    def path_for(self, destination: str) -> Path:
        name = destination if destination.endswith(".csv") else f"{destination}.csv"
        return self.out_dir / name

    def write(self, records, fields, destination):
        out_path = self.path_for(destination)
        if out_path.exists() and not self.overwrite:
            raise FileExistsError(f"{out_path} exists; pass overwrite=True to replace it")
        out_path.parent.mkdir(parents=True, exist_ok=True)
        df = records_to_frame(records, fields)
        df.to_csv(out_path, index=False)
        log.info("Wrote %d records -> %s", len(df), out_path)
