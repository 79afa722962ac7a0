#!/usr/bin/env python3
"""readers.py

Build RasterImages and lazy RasterCollections from GeoTIFFs on disk.

Opening a file for a collection only reads its header (bounds, band
descriptions). Pixels are read when the collection is materialized, and only
for the AOI window when a bbox is given (same window-read approach used for
remote COGs: rasterio.windows.from_bounds + boundless read).

Band naming:
- explicit `band_names` win
- else the GeoTIFF band descriptions
- else "b1", "b2", ...

Nodata pixels become NaN.

Required deps (typical conda geo stack): rasterio, numpy
"""

from __future__ import annotations

import glob
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.warp import transform_bounds
from rasterio.windows import from_bounds

from regionstats.config import BBox
from regionstats.errors import ConfigError
from regionstats.ingest.collection import ImageRef, RasterCollection, RasterImage

log = logging.getLogger(__name__)


def _safe_round_window(win):
    """Round window offsets/lengths to integers (GDAL prefers integer windows)."""
    return win.round_offsets().round_lengths()


def _resolve_band_names(src, band_names: Optional[Sequence[str]]) -> Tuple[str, ...]:
    if band_names is not None:
        names = tuple(str(b) for b in band_names)
        if len(names) != src.count:
            raise ConfigError(
                f"{src.name}: got {len(names)} band names for {src.count} bands ({list(names)})"
            )
        return names
    descriptions = [d for d in (src.descriptions or ()) if d]
    if len(descriptions) == src.count and len(set(descriptions)) == src.count:
        return tuple(descriptions)
    return tuple(f"b{i}" for i in range(1, src.count + 1))


def _bbox_in_raster_crs(src, bbox: BBox, bbox_crs: str) -> BBox:
    if src.crs is None or str(src.crs).upper() in (bbox_crs.upper(), "WGS84"):
        return bbox
    # transform_bounds densifies edges to avoid clipping curved boundaries
    return tuple(transform_bounds(bbox_crs, src.crs, *bbox, densify_pts=21))  # type: ignore[return-value]


def read_image(
    path: Path,
    *,
    timestamp: Optional[datetime] = None,
    band_names: Optional[Sequence[str]] = None,
    bbox: Optional[BBox] = None,
    bbox_crs: str = "EPSG:4326",
) -> RasterImage:
    """Read a GeoTIFF (or its AOI window) into a RasterImage."""
    path = Path(path)
    with rasterio.open(path) as src:
        names = _resolve_band_names(src, band_names)

        if bbox is not None:
            win = from_bounds(*_bbox_in_raster_crs(src, bbox, bbox_crs), transform=src.transform)
            win = _safe_round_window(win)
            data = src.read(window=win, boundless=True, masked=True)
            transform = src.window_transform(win)
        else:
            data = src.read(masked=True)
            transform = src.transform

        arr = np.ma.filled(data.astype("float64"), np.nan)
        crs = src.crs

    bands: Dict[str, np.ndarray] = {name: arr[i] for i, name in enumerate(names)}
    log.debug("Read %s: %s bands, shape %s", path.name, len(bands), arr.shape[1:])
    return RasterImage(bands=bands, transform=transform, crs=crs, timestamp=timestamp, source=str(path))


def image_ref(
    path: Path,
    *,
    timestamp: Optional[datetime] = None,
    band_names: Optional[Sequence[str]] = None,
    bbox: Optional[BBox] = None,
    bbox_crs: str = "EPSG:4326",
) -> ImageRef:
    """Describe a GeoTIFF without reading its pixels."""
    path = Path(path)
    with rasterio.open(path) as src:
        names = _resolve_band_names(src, band_names)
        b = src.bounds
        bounds: BBox = (b.left, b.bottom, b.right, b.top)
        crs = src.crs

    def _load() -> RasterImage:
        return read_image(path, timestamp=timestamp, band_names=names, bbox=bbox, bbox_crs=bbox_crs)

    return ImageRef(timestamp=timestamp, bounds=bounds, band_names=names, load=_load, source=str(path), crs=crs)


def parse_timestamp(name: str, date_pattern: str, date_format: str) -> datetime:
    """Pull a timestamp out of a file name.

    `date_pattern` is a regex whose first group holds the date text, parsed
    with `date_format` (e.g. r"(\\d{6})" + "%Y%m" for 'VNL_201403_avg.tif').
    """
    m = re.search(date_pattern, name)
    if not m:
        raise ConfigError(f"No date matching {date_pattern!r} in file name '{name}'")
    text = m.group(1) if m.groups() else m.group(0)
    try:
        return datetime.strptime(text, date_format)
    except ValueError as e:
        raise ConfigError(f"Date text '{text}' in '{name}' doesn't match format {date_format!r}") from e


def collection_from_glob(
    pattern: str,
    *,
    date_pattern: str = r"(\d{8})",
    date_format: str = "%Y%m%d",
    band_names: Optional[Sequence[str]] = None,
    bbox: Optional[BBox] = None,
    bbox_crs: str = "EPSG:4326",
    root: Path = Path("."),
) -> RasterCollection:
    """Build a lazy collection from every file matching `pattern` under `root`."""
    paths = sorted(Path(p) for p in glob.glob(str(Path(root) / pattern)))
    if not paths:
        log.warning("No rasters matched %s under %s", pattern, root)
    refs = [
        image_ref(
            p,
            timestamp=parse_timestamp(p.name, date_pattern, date_format),
            band_names=band_names,
            bbox=bbox,
            bbox_crs=bbox_crs,
        )
        for p in paths
    ]
    log.info("Indexed %d rasters for %s", len(refs), pattern)
    return RasterCollection(refs)
