#!/usr/bin/env python3
"""catalog.py

The fixed set of polygon regions every variable is aggregated over.

A RegionCatalog is loaded once from a vector file (GeoPackage, shapefile,
GeoJSON) or an in-memory GeoDataFrame and treated as read-only afterwards.

Load-time rules:
- every region needs a non-empty, unique name
- geometries must be present, non-empty and valid; invalid geometries are
  rejected, never repaired (no make_valid / buffer(0) here)
- ids come from an id column when given, otherwise from the name

Example:
  catalog = load_catalog(Path("data/interim/vectors/regions.gpkg"), name_field="NAME_1")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import geopandas as gpd
from pyproj import CRS
from shapely.geometry.base import BaseGeometry
from shapely.validation import explain_validity

from regionstats.errors import InvalidRegionError

log = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def _normalize_id(x: Any) -> str:
    """Normalize a region id to a comparable string.

    Handles ints, floats read back from shapefiles ('7.0'), '07' and ' 7 '.
    Returns empty string for missing inputs.
    """
    if x is None:
        return ""
    s = str(x).strip()
    if not s or s.lower() == "nan":
        return ""
    if re.fullmatch(r"\d+(\.0+)?", s):
        return str(int(float(s)))
    return s


def _pick_name_field(columns: Sequence[str], preferred: Optional[str] = None) -> str:
    """Infer which column holds the region name.

    If preferred is provided and exists, use it. Otherwise score columns by
    likelihood: boundary datasets name this column NAME, NAME_1, ADM1_EN,
    shapeName, district, etc.
    """
    if preferred:
        if preferred in columns:
            return preferred
        raise InvalidRegionError(f"name field '{preferred}' not found. Available columns: {list(columns)}")

    candidates: List[Tuple[int, str]] = []
    for c in columns:
        if c == "geometry":
            continue
        cl = c.lower()
        score = 0
        if cl in ("name", "region_name", "shapename"):
            score += 5
        if "name" in cl or cl.endswith("_en"):
            score += 3
        if "adm" in cl or "region" in cl or "district" in cl or "state" in cl:
            score += 1
        if "code" in cl or "id" in cl or "pcode" in cl or "area" in cl:
            score -= 2
        candidates.append((score, c))

    if not candidates:
        raise InvalidRegionError("Region source has no attribute columns; can't find a name field.")

    candidates.sort(reverse=True)
    best_score, best_col = candidates[0]
    if best_score < 3:
        raise InvalidRegionError(
            "Couldn't confidently infer the region name column. "
            "Pass name_field explicitly.\n"
            f"Columns: {list(columns)}\n"
            f"Top guesses: {candidates[:8]}"
        )
    return best_col


def _check_geometry(name: str, geom: Optional[BaseGeometry]) -> None:
    if geom is None:
        raise InvalidRegionError(f"Region '{name}' has no geometry")
    if geom.is_empty:
        raise InvalidRegionError(f"Region '{name}' has an empty geometry")
    if geom.geom_type not in ("Polygon", "MultiPolygon"):
        raise InvalidRegionError(f"Region '{name}' is a {geom.geom_type}, expected a polygon")
    if not geom.is_valid:
        raise InvalidRegionError(f"Region '{name}' has an invalid geometry: {explain_validity(geom)}")


# -----------------------------------------------------------------------------
# Catalog types
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Region:
    id: str
    name: str
    geometry: BaseGeometry

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return tuple(self.geometry.bounds)  # type: ignore[return-value]


class RegionCatalog:
    """Ordered, immutable collection of regions sharing one CRS."""

    def __init__(self, regions: Sequence[Region], crs: Any = None):
        regions = tuple(regions)
        seen_names: Dict[str, str] = {}
        seen_ids = set()
        for r in regions:
            if not r.name or not str(r.name).strip():
                raise InvalidRegionError(f"Region with id '{r.id}' has no name")
            if r.name in seen_names:
                raise InvalidRegionError(f"Duplicate region name '{r.name}'. Names must be unique.")
            if r.id in seen_ids:
                raise InvalidRegionError(f"Duplicate region id '{r.id}'. Ids must be unique.")
            _check_geometry(r.name, r.geometry)
            seen_names[r.name] = r.id
            seen_ids.add(r.id)
        self._regions = regions
        self.crs = crs

    def __iter__(self) -> Iterator[Region]:
        return iter(self._regions)

    def __len__(self) -> int:
        return len(self._regions)

    def __getitem__(self, i: int) -> Region:
        return self._regions[i]

    def __repr__(self) -> str:
        return f"RegionCatalog({len(self)} regions, crs={self.crs})"

    @property
    def ids(self) -> List[str]:
        return [r.id for r in self._regions]

    @property
    def names(self) -> List[str]:
        return [r.name for r in self._regions]

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        if not self._regions:
            raise InvalidRegionError("Empty catalog has no bounds")
        b = [r.bounds for r in self._regions]
        return (min(x[0] for x in b), min(x[1] for x in b), max(x[2] for x in b), max(x[3] for x in b))

    def get(self, region_id: str) -> Region:
        for r in self._regions:
            if r.id == region_id:
                return r
        raise KeyError(region_id)

    def to_crs(self, crs: Any) -> "RegionCatalog":
        """Return a new catalog reprojected to `crs`.

        Returns self when either CRS is unknown or both already match.
        """
        if crs is None or self.crs is None:
            return self
        if CRS.from_user_input(self.crs) == CRS.from_user_input(crs):
            return self
        series = gpd.GeoSeries([r.geometry for r in self._regions], crs=self.crs)
        projected = series.to_crs(crs)
        regions = [Region(r.id, r.name, g) for r, g in zip(self._regions, projected)]
        return RegionCatalog(regions, crs=projected.crs)

    def to_geodataframe(self) -> gpd.GeoDataFrame:
        return gpd.GeoDataFrame(
            {"region_id": self.ids, "region_name": self.names},
            geometry=[r.geometry for r in self._regions],
            crs=self.crs,
        )

    @classmethod
    def from_geodataframe(
        cls,
        gdf: gpd.GeoDataFrame,
        *,
        name_field: Optional[str] = None,
        id_field: Optional[str] = None,
    ) -> "RegionCatalog":
        if gdf.empty:
            raise InvalidRegionError("Region source contains zero features. Wrong file?")

        detected_name = _pick_name_field(list(gdf.columns), preferred=name_field)
        if id_field and id_field not in gdf.columns:
            raise InvalidRegionError(f"id field '{id_field}' not found. Available columns: {list(gdf.columns)}")

        regions: List[Region] = []
        for _, row in gdf.iterrows():
            raw_name = row[detected_name]
            name = "" if raw_name is None else str(raw_name).strip()
            if not name or name.lower() == "nan":
                raise InvalidRegionError(f"Region is missing a name in column '{detected_name}': {dict(row.drop('geometry'))}")
            rid = _normalize_id(row[id_field]) if id_field else name
            if not rid:
                raise InvalidRegionError(f"Region '{name}' is missing an id in column '{id_field}'")
            regions.append(Region(id=rid, name=name, geometry=row.geometry))

        log.debug("Built catalog from %d features (name field: %s)", len(regions), detected_name)
        return cls(regions, crs=gdf.crs)


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------

def load_catalog(
    path: Path,
    *,
    name_field: Optional[str] = None,
    id_field: Optional[str] = None,
    layer: Optional[str] = None,
    target_crs: Optional[str] = None,
) -> RegionCatalog:
    """Read a polygon file into a RegionCatalog.

    Raises InvalidRegionError on missing names, duplicates, or invalid
    geometries, and when the file has no CRS but a target CRS was requested.
    """
    path = Path(path)
    if not path.exists():
        raise InvalidRegionError(f"Region file not found: {path}")

    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)

    if target_crs:
        if gdf.crs is None:
            raise InvalidRegionError(
                f"{path} has no CRS (.prj missing or unreadable); can't reproject to {target_crs}."
            )
        gdf = gdf.to_crs(target_crs)

    catalog = RegionCatalog.from_geodataframe(gdf, name_field=name_field, id_field=id_field)
    log.info("Loaded %d regions from %s (crs=%s)", len(catalog), path, catalog.crs)
    return catalog
