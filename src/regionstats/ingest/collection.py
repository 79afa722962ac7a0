#!/usr/bin/env python3
"""collection.py

In-memory raster images and lazy, time-ordered raster collections.

A RasterCollection never holds pixel data. It holds ImageRefs (timestamp,
bounds, band names, and a loader) plus an ordered list of pending per-image
operations. Filtering works on the ref metadata alone; band selection is
checked against the ref band names right away; transforms are recorded and
only run when images are materialized by iterating the collection.

Every operation returns a new collection. Nothing is mutated in place, which
also means a transform recorded once is applied exactly once per loaded image.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from affine import Affine
from rasterio.transform import array_bounds
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from regionstats.config import BBox, bbox_intersects
from regionstats.errors import BandNotFoundError


DateLike = Union[datetime, date, str]
ImageOp = Callable[["RasterImage"], "RasterImage"]


def as_datetime(x: DateLike) -> datetime:
    """Coerce a datetime, date, or ISO string ('2000', '2000-03', '2000-03-01') to datetime."""
    if isinstance(x, datetime):
        return x
    if isinstance(x, date):
        return datetime(x.year, x.month, x.day)
    s = str(x).strip()
    for fmt in ("%Y", "%Y-%m", "%Y-%m-%d"):
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return datetime.fromisoformat(s)


def _frozen(arr: Any) -> np.ndarray:
    out = np.array(arr, dtype="float64", copy=True)
    if out.ndim != 2:
        raise ValueError(f"Band arrays must be 2-D, got shape {out.shape}")
    out.setflags(write=False)
    return out


# -----------------------------------------------------------------------------
# RasterImage
# -----------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class RasterImage:
    """One georeferenced image: named 2-D float bands on a shared grid.

    NaN marks invalid (nodata) pixels. Arrays are read-only copies.
    """

    bands: Mapping[str, np.ndarray]
    transform: Affine
    crs: Any = None
    timestamp: Optional[datetime] = None
    source: Optional[str] = None

    def __post_init__(self):
        if not self.bands:
            raise ValueError("RasterImage needs at least one band")
        frozen = {str(k): _frozen(v) for k, v in self.bands.items()}
        shapes = {a.shape for a in frozen.values()}
        if len(shapes) != 1:
            raise ValueError(f"All bands must share one grid, got shapes {sorted(shapes)}")
        object.__setattr__(self, "bands", frozen)
        if self.timestamp is not None:
            object.__setattr__(self, "timestamp", as_datetime(self.timestamp))

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(self.bands)

    @property
    def shape(self) -> Tuple[int, int]:
        return next(iter(self.bands.values())).shape

    @property
    def resolution(self) -> Tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def bounds(self) -> BBox:
        h, w = self.shape
        west, south, east, north = array_bounds(h, w, self.transform)
        return (west, south, east, north)

    def band(self, name: str) -> np.ndarray:
        if name not in self.bands:
            raise BandNotFoundError(name, self.band_names, self.source)
        return self.bands[name]

    def select(self, names: Sequence[str]) -> "RasterImage":
        missing = [n for n in names if n not in self.bands]
        if missing:
            raise BandNotFoundError(missing[0], self.band_names, self.source)
        return replace(self, bands={n: self.bands[n] for n in names})

    def with_bands(self, bands: Mapping[str, np.ndarray]) -> "RasterImage":
        return replace(self, bands=dict(bands))

    def empty_like(self, timestamp: Optional[DateLike] = None) -> "RasterImage":
        """Same grid and bands, every pixel NaN."""
        nan = np.full(self.shape, np.nan)
        return RasterImage(
            bands={n: nan for n in self.band_names},
            transform=self.transform,
            crs=self.crs,
            timestamp=as_datetime(timestamp) if timestamp is not None else None,
        )

    def same_grid(self, other: "RasterImage") -> bool:
        return self.shape == other.shape and self.transform.almost_equals(other.transform) and self.crs == other.crs


def linear_rescale(factor: float, offset: float = 0.0, bands: Optional[Sequence[str]] = None) -> ImageOp:
    """Build an op computing `value * factor + offset` on the given bands (all by default)."""

    def _op(img: RasterImage) -> RasterImage:
        targets = img.band_names if bands is None else tuple(bands)
        out: Dict[str, np.ndarray] = dict(img.bands)
        for name in targets:
            out[name] = img.band(name) * factor + offset
        return img.with_bands(out)

    return _op


# -----------------------------------------------------------------------------
# RasterCollection
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ImageRef:
    """Metadata for one not-yet-loaded image."""

    timestamp: Optional[datetime]
    bounds: BBox
    band_names: Tuple[str, ...]
    load: Callable[[], RasterImage]
    source: Optional[str] = None
    crs: Any = None


class RasterCollection:
    """Lazy, time-ordered set of raster images."""

    def __init__(self, refs: Iterable[ImageRef] = (), ops: Sequence[ImageOp] = ()):
        refs = list(refs)
        # timestamp-less refs sort first; the sort is stable for ties
        refs.sort(key=lambda r: (r.timestamp is not None, r.timestamp or datetime.min))
        self._refs: Tuple[ImageRef, ...] = tuple(refs)
        self._ops: Tuple[ImageOp, ...] = tuple(ops)

    @classmethod
    def from_images(cls, images: Iterable[RasterImage]) -> "RasterCollection":
        refs = [
            ImageRef(
                timestamp=img.timestamp,
                bounds=img.bounds,
                band_names=img.band_names,
                load=(lambda img=img: img),
                source=img.source,
                crs=img.crs,
            )
            for img in images
        ]
        return cls(refs)

    def __len__(self) -> int:
        return len(self._refs)

    def __repr__(self) -> str:
        return f"RasterCollection({len(self)} images, {len(self._ops)} pending ops)"

    def __iter__(self) -> Iterator[RasterImage]:
        return self.images()

    @property
    def refs(self) -> Tuple[ImageRef, ...]:
        return self._refs

    @property
    def timestamps(self) -> List[Optional[datetime]]:
        return [r.timestamp for r in self._refs]

    @property
    def band_names(self) -> Tuple[str, ...]:
        """Bands present in every image."""
        if not self._refs:
            return ()
        common = set(self._refs[0].band_names)
        for r in self._refs[1:]:
            common &= set(r.band_names)
        return tuple(b for b in self._refs[0].band_names if b in common)

    def _derive(self, refs: Iterable[ImageRef], extra_op: Optional[ImageOp] = None) -> "RasterCollection":
        ops = self._ops + ((extra_op,) if extra_op is not None else ())
        return RasterCollection(refs, ops)

    def filter_by_date(self, start: DateLike, end: DateLike) -> "RasterCollection":
        """Keep images with start <= timestamp < end."""
        lo, hi = as_datetime(start), as_datetime(end)
        return self._derive(r for r in self._refs if r.timestamp is not None and lo <= r.timestamp < hi)

    def filter_by_bounds(self, geometry: Union[BaseGeometry, BBox]) -> "RasterCollection":
        """Keep images whose footprint intersects the geometry."""
        geom = box(*geometry) if isinstance(geometry, (tuple, list)) else geometry
        target = tuple(geom.bounds)
        keep = []
        for r in self._refs:
            if not bbox_intersects(r.bounds, target):  # type: ignore[arg-type]
                continue
            if box(*r.bounds).intersects(geom):
                keep.append(r)
        return self._derive(keep)

    def select_bands(self, names: Sequence[str]) -> "RasterCollection":
        """Project every image to `names`. Raises BandNotFoundError now, not at load time."""
        names = tuple(names)
        for r in self._refs:
            for n in names:
                if n not in r.band_names:
                    raise BandNotFoundError(n, r.band_names, r.source)
        refs = [replace(r, band_names=names) for r in self._refs]
        return self._derive(refs, lambda img: img.select(names))

    def map_transform(self, fn: ImageOp) -> "RasterCollection":
        """Record `fn` to run once per image when images are materialized."""
        return self._derive(self._refs, fn)

    def rescale(self, factor: float, offset: float = 0.0, bands: Optional[Sequence[str]] = None) -> "RasterCollection":
        if bands is not None:
            for r in self._refs:
                for n in bands:
                    if n not in r.band_names:
                        raise BandNotFoundError(n, r.band_names, r.source)
        return self.map_transform(linear_rescale(factor, offset, bands))

    def first(self) -> Optional[RasterImage]:
        for img in self.images():
            return img
        return None

    def images(self) -> Iterator[RasterImage]:
        """Materialize: load each image and apply the pending ops in order."""
        for r in self._refs:
            img = r.load()
            for op in self._ops:
                img = op(img)
            yield img
