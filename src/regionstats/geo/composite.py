#!/usr/bin/env python3
"""composite.py

Bucket a RasterCollection into calendar years and reduce each bucket
pixel-wise into one composite per year.

Rules:
- year y takes images with y-01-01 <= timestamp < (y+1)-01-01
- every year in [start_year, end_year] yields a Composite, including years
  with no images (all-NaN pixels on the reference grid, plus an
  EmptyBucketWarning); downstream reductions then report None for them
- NaN pixels are ignored by the per-pixel statistic
- images on a different grid are warped onto the reference grid (the first
  image of the collection) before stacking

Mean is the default statistic. It doesn't depend on image order, but float
summation can differ in the last bits between orders, so compare composites
with a tolerance.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional

import numpy as np
from rasterio.warp import Resampling, reproject

from regionstats.config import validate_statistic, validate_year_range
from regionstats.errors import ConfigError, EmptyBucketWarning
from regionstats.ingest.collection import RasterCollection, RasterImage

log = logging.getLogger(__name__)


# Each takes an (images, rows, cols) stack and ignores NaN. A pixel with no
# valid value in any image stays NaN. No warnings are raised or filtered, so
# these are safe to call from worker threads.

def _pixel_mean(stack: np.ndarray) -> np.ndarray:
    count = np.count_nonzero(~np.isnan(stack), axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.nansum(stack, axis=0) / count


def _pixel_median(stack: np.ndarray) -> np.ndarray:
    has_data = (~np.isnan(stack)).any(axis=0)
    # all-NaN pixels get a placeholder so nanmedian has nothing to warn about
    out = np.nanmedian(np.where(has_data, stack, 0.0), axis=0)
    out[~has_data] = np.nan
    return out


def _pixel_min(stack: np.ndarray) -> np.ndarray:
    return np.fmin.reduce(stack, axis=0)


def _pixel_max(stack: np.ndarray) -> np.ndarray:
    return np.fmax.reduce(stack, axis=0)


PIXEL_REDUCERS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "mean": _pixel_mean,
    "median": _pixel_median,
    "min": _pixel_min,
    "max": _pixel_max,
}


@dataclass(frozen=True, eq=False)
class Composite:
    """One period's reduced image. `image` is None only when no grid is known."""

    period: int
    image: Optional[RasterImage]
    n_images: int
    statistic: str

    @property
    def is_empty(self) -> bool:
        return self.n_images == 0


def year_bounds(year: int):
    """Half-open calendar-year interval [Jan 1 of year, Jan 1 of year + 1)."""
    return datetime(year, 1, 1), datetime(year + 1, 1, 1)


def align_to(img: RasterImage, template: RasterImage) -> RasterImage:
    """Warp `img` onto the template grid (nearest neighbour)."""
    if img.same_grid(template):
        return img
    out: Dict[str, np.ndarray] = {}
    for name, arr in img.bands.items():
        dst = np.full(template.shape, np.nan)
        reproject(
            source=np.ascontiguousarray(arr),
            destination=dst,
            src_transform=img.transform,
            src_crs=img.crs or template.crs,
            dst_transform=template.transform,
            dst_crs=template.crs or img.crs,
            src_nodata=np.nan,
            dst_nodata=np.nan,
            resampling=Resampling.nearest,
        )
        out[name] = dst
    return RasterImage(bands=out, transform=template.transform, crs=template.crs, timestamp=img.timestamp, source=img.source)


def reduce_stack(images: List[RasterImage], statistic: str) -> Dict[str, np.ndarray]:
    """Per-pixel reduction of same-grid images, band by band."""
    fn = PIXEL_REDUCERS[statistic]
    names = images[0].band_names
    out: Dict[str, np.ndarray] = {}
    for name in names:
        out[name] = fn(np.stack([img.band(name) for img in images], axis=0))
    return out


class TemporalCompositor:
    """Yearly composites over a collection.

    Construction is cheap and side-effect free; pixels are only read when
    composites are requested (iteration, `composite(year)` or `composites()`).
    """

    def __init__(
        self,
        collection: RasterCollection,
        start_year: int,
        end_year: int,
        statistic: str = "mean",
        template: Optional[RasterImage] = None,
    ):
        validate_year_range(int(start_year), int(end_year))
        validate_statistic(statistic)
        if statistic not in PIXEL_REDUCERS:
            raise ConfigError(f"'{statistic}' is not a per-pixel compositing statistic. Use one of {sorted(PIXEL_REDUCERS)}")
        self.collection = collection
        self.start_year = int(start_year)
        self.end_year = int(end_year)
        self.statistic = statistic
        self._template = template

    def __repr__(self) -> str:
        return f"TemporalCompositor({self.start_year}-{self.end_year}, {self.statistic}, {self.collection!r})"

    @property
    def periods(self) -> List[int]:
        return list(range(self.start_year, self.end_year + 1))

    def __iter__(self) -> Iterator[Composite]:
        for year in self.periods:
            yield self.composite(year)

    def composites(self) -> List[Composite]:
        return list(self)

    def template(self) -> Optional[RasterImage]:
        """Reference grid: the explicit template, else the collection's first image."""
        if self._template is None:
            self._template = self.collection.first()
        return self._template

    def composite(self, year: int) -> Composite:
        start, end = year_bounds(year)
        bucket = self.collection.filter_by_date(start, end)
        images = list(bucket)

        if not images:
            msg = f"No images for {year} in [{start:%Y-%m-%d}, {end:%Y-%m-%d}); composite is all undefined"
            warnings.warn(msg, EmptyBucketWarning, stacklevel=2)
            log.warning(msg)
            template = self.template()
            empty = template.empty_like(timestamp=start) if template is not None else None
            return Composite(period=year, image=empty, n_images=0, statistic=self.statistic)

        template = self.template() or images[0]
        aligned = [align_to(img, template) for img in images]
        bands = reduce_stack(aligned, self.statistic)
        log.debug("Composited %d images for %d (%s)", len(images), year, self.statistic)
        image = RasterImage(bands=bands, transform=template.transform, crs=template.crs, timestamp=start)
        return Composite(period=year, image=image, n_images=len(images), statistic=self.statistic)
