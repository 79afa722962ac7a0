#!/usr/bin/env python3
"""zonal.py

Reduce one raster over polygon regions (zonal statistics).

Two call patterns share the same pixel rules:
- reduce(): one pass over the raster in tiles; each tile feeds every region
  it touches. Used for composites, where many periods x regions are reduced.
- reduce_region(): clip to one region's window and reduce just that. Used for
  single static rasters, one region at a time.

Pixel rules:
- the raster is first resampled to `scale` (ground-sampling distance, raster
  CRS units); scale equal to the native resolution leaves it untouched
- a pixel belongs to a region when its centre falls inside the polygon
  (rasterio geometry_mask, all_touched=False)
- NaN pixels are invalid; a region with no valid pixels gets None

`tile_hint` caps the number of pixels masked and reduced per internal step.
It only bounds memory; results are the same for any hint (up to float
summation order).

`pixel_budget` caps the pixels a single region may cover before masking.
Regions over it raise AggregationBudgetExceeded; callers decide how to recover.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from affine import Affine
from rasterio.features import geometry_mask
from rasterio.warp import Resampling, reproject

from regionstats.config import validate_scale, validate_statistic
from regionstats.errors import AggregationBudgetExceeded, BandNotFoundError, ConfigError
from regionstats.ingest.collection import RasterImage
from regionstats.pipeline.records import ZonalRecord, clean_value
from regionstats.registry.catalog import Region, RegionCatalog

log = logging.getLogger(__name__)


# (row_start, row_stop, col_start, col_stop), stop exclusive
PixelWindow = Tuple[int, int, int, int]


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def pixel_window(transform: Affine, shape: Tuple[int, int], bounds) -> Optional[PixelWindow]:
    """Pixel window covering `bounds`, clipped to the grid. None when disjoint."""
    height, width = shape
    xmin, ymin, xmax, ymax = bounds
    inv = ~transform
    corners = [inv @ (x, y) for x, y in ((xmin, ymin), (xmin, ymax), (xmax, ymin), (xmax, ymax))]
    cols = [c for c, _ in corners]
    rows = [r for _, r in corners]
    c0 = max(0, int(math.floor(min(cols))))
    c1 = min(width, int(math.ceil(max(cols))))
    r0 = max(0, int(math.floor(min(rows))))
    r1 = min(height, int(math.ceil(max(rows))))
    if r0 >= r1 or c0 >= c1:
        return None
    return (r0, r1, c0, c1)


def window_size(win: Optional[PixelWindow]) -> int:
    if win is None:
        return 0
    r0, r1, c0, c1 = win
    return (r1 - r0) * (c1 - c0)


def intersect_windows(a: PixelWindow, b: PixelWindow) -> Optional[PixelWindow]:
    r0, r1 = max(a[0], b[0]), min(a[1], b[1])
    c0, c1 = max(a[2], b[2]), min(a[3], b[3])
    if r0 >= r1 or c0 >= c1:
        return None
    return (r0, r1, c0, c1)


def iter_tiles(win: PixelWindow, tile_hint: Optional[int]) -> Iterator[PixelWindow]:
    """Split a window into tiles of at most `tile_hint` pixels (row-major)."""
    r0, r1, c0, c1 = win
    if tile_hint is None:
        yield win
        return
    width = c1 - c0
    if width <= tile_hint:
        rows_per_tile, cols_per_tile = max(1, tile_hint // width), width
    else:
        rows_per_tile, cols_per_tile = 1, tile_hint
    for r in range(r0, r1, rows_per_tile):
        for c in range(c0, c1, cols_per_tile):
            yield (r, min(r + rows_per_tile, r1), c, min(c + cols_per_tile, c1))


def _cells(extent: float, scale: float) -> int:
    """Cells of size `scale` needed to cover `extent` (a partial last cell counts)."""
    return max(1, int(math.ceil(extent / scale - 1e-9)))


class _Accumulator:
    """Streams valid pixel values for one region and one statistic."""

    def __init__(self, statistic: str):
        self.statistic = statistic
        self.count = 0
        self.total = 0.0
        self.lo = math.inf
        self.hi = -math.inf
        self._parts: List[np.ndarray] = []

    def add(self, values: np.ndarray) -> None:
        if values.size == 0:
            return
        self.count += int(values.size)
        self.total += float(values.sum(dtype="float64"))
        self.lo = min(self.lo, float(values.min()))
        self.hi = max(self.hi, float(values.max()))
        if self.statistic == "median":
            self._parts.append(values.copy())

    def result(self) -> Optional[float]:
        if self.statistic == "count":
            return float(self.count)
        if self.count == 0:
            return None
        if self.statistic == "mean":
            return self.total / self.count
        if self.statistic == "sum":
            return self.total
        if self.statistic == "min":
            return self.lo
        if self.statistic == "max":
            return self.hi
        return float(np.median(np.concatenate(self._parts)))


# -----------------------------------------------------------------------------
# ZonalReducer
# -----------------------------------------------------------------------------

class ZonalReducer:
    """Zonal statistics for a raster over RegionCatalog regions."""

    def __init__(self, pixel_budget: Optional[int] = None):
        if pixel_budget is not None and pixel_budget <= 0:
            raise ConfigError(f"pixel_budget must be positive, got {pixel_budget}")
        self.pixel_budget = pixel_budget

    def __repr__(self) -> str:
        return f"ZonalReducer(pixel_budget={self.pixel_budget})"

    # --- inputs ---

    @staticmethod
    def check_inputs(statistic: str, scale: float, tile_hint: Optional[int]) -> None:
        """Configuration checks that must pass before any pixels are touched."""
        validate_statistic(statistic)
        validate_scale(scale)
        if tile_hint is not None and int(tile_hint) <= 0:
            raise ConfigError(f"tile_hint must be a positive pixel count, got {tile_hint}")

    @staticmethod
    def check_scale_fits(scale: float, bounds) -> None:
        """A cell of `scale` must fit inside the raster extent.

        Catches scales given in the wrong units (metres for a degree grid),
        which would otherwise collapse the raster to one cell.
        """
        west, south, east, north = bounds
        width, height = east - west, north - south
        if scale > width or scale > height:
            raise ConfigError(
                f"scale {scale} is larger than the raster extent ({width:g} x {height:g} CRS units). "
                "scale is in raster CRS units; use the native resolution of the source."
            )

    @staticmethod
    def band_array(raster: RasterImage, band: Optional[str]) -> np.ndarray:
        if band is not None:
            return raster.band(band)
        if len(raster.band_names) != 1:
            raise BandNotFoundError("<unspecified>", raster.band_names, raster.source)
        return raster.band(raster.band_names[0])

    def resample(self, raster: RasterImage, scale: float) -> RasterImage:
        """Put the raster on a north-up grid of cell size `scale`.

        Coarsening averages the valid source pixels; refining uses nearest
        neighbour. A scale matching the native resolution is a no-op.
        """
        validate_scale(scale)
        self.check_scale_fits(scale, raster.bounds)
        xres, yres = raster.resolution
        if math.isclose(xres, scale, rel_tol=1e-9) and math.isclose(yres, scale, rel_tol=1e-9):
            return raster
        if raster.crs is None:
            raise ConfigError(
                f"Can't resample to scale {scale} without a CRS "
                f"(native resolution {xres}x{yres}); pass the native scale instead."
            )

        west, south, east, north = raster.bounds
        width = _cells(east - west, scale)
        height = _cells(north - south, scale)
        dst_transform = Affine(scale, 0.0, west, 0.0, -scale, north)
        resampling = Resampling.average if scale > min(xres, yres) else Resampling.nearest

        bands: Dict[str, np.ndarray] = {}
        for name, arr in raster.bands.items():
            dst = np.full((height, width), np.nan)
            reproject(
                source=np.ascontiguousarray(arr),
                destination=dst,
                src_transform=raster.transform,
                src_crs=raster.crs,
                dst_transform=dst_transform,
                dst_crs=raster.crs,
                src_nodata=np.nan,
                dst_nodata=np.nan,
                resampling=resampling,
            )
            bands[name] = dst
        log.debug("Resampled %sx%s -> %s (%s)", xres, yres, scale, resampling.name)
        return RasterImage(bands=bands, transform=dst_transform, crs=raster.crs, timestamp=raster.timestamp, source=raster.source)

    @staticmethod
    def prepare_regions(regions: RegionCatalog, raster: RasterImage) -> RegionCatalog:
        """Regions in the raster CRS (unchanged when either CRS is unknown)."""
        return regions.to_crs(raster.crs)

    # --- budget ---

    def region_pixels(self, raster: RasterImage, region: Region) -> int:
        """Pixels in the region's bounding window on this (already resampled) raster."""
        return window_size(pixel_window(raster.transform, raster.shape, region.bounds))

    def check_budget(self, raster: RasterImage, region: Region, scale: Optional[float] = None) -> int:
        """Raise AggregationBudgetExceeded if the region is too big; return its pixel count."""
        if scale is not None:
            raster = self.resample(raster, scale)
        n = self.region_pixels(raster, region)
        if self.pixel_budget is not None and n > self.pixel_budget:
            raise AggregationBudgetExceeded(region.id, n, self.pixel_budget)
        return n

    # --- reductions ---

    def _accumulate(
        self,
        acc: _Accumulator,
        data: np.ndarray,
        transform: Affine,
        region: Region,
        tile: PixelWindow,
    ) -> None:
        r0, r1, c0, c1 = tile
        block = data[r0:r1, c0:c1]
        inside = geometry_mask(
            [region.geometry],
            out_shape=block.shape,
            transform=transform @ Affine.translation(c0, r0),
            all_touched=False,
            invert=True,
        )
        values = block[inside]
        acc.add(values[~np.isnan(values)])

    def reduce_region(
        self,
        raster: RasterImage,
        region: Region,
        statistic: str = "mean",
        scale: float = 0.0,
        tile_hint: Optional[int] = None,
        band: Optional[str] = None,
    ) -> ZonalRecord:
        """Reduce one region directly. The region must be in the raster CRS."""
        self.check_inputs(statistic, scale, tile_hint)
        data_raster = self.resample(raster, scale)
        data = self.band_array(data_raster, band)

        win = pixel_window(data_raster.transform, data_raster.shape, region.bounds)
        n = window_size(win)
        if self.pixel_budget is not None and n > self.pixel_budget:
            raise AggregationBudgetExceeded(region.id, n, self.pixel_budget)

        acc = _Accumulator(statistic)
        if win is not None:
            for tile in iter_tiles(win, tile_hint):
                self._accumulate(acc, data, data_raster.transform, region, tile)

        return ZonalRecord(region_id=region.id, region_name=region.name, statistic=statistic, value=clean_value(acc.result()))

    def reduce(
        self,
        raster: RasterImage,
        regions: Union[RegionCatalog, Sequence[Region]],
        statistic: str = "mean",
        scale: float = 0.0,
        tile_hint: Optional[int] = None,
        band: Optional[str] = None,
    ) -> List[ZonalRecord]:
        """Reduce every region in one tiled pass over the raster.

        A RegionCatalog is reprojected to the raster CRS first; a plain
        sequence of Regions must already be in the raster CRS.
        Returns one record per region, in input order.
        """
        self.check_inputs(statistic, scale, tile_hint)
        data_raster = self.resample(raster, scale)
        data = self.band_array(data_raster, band)
        if isinstance(regions, RegionCatalog):
            regions = self.prepare_regions(regions, data_raster)
        regions = list(regions)

        windows: List[Optional[PixelWindow]] = []
        for region in regions:
            win = pixel_window(data_raster.transform, data_raster.shape, region.bounds)
            n = window_size(win)
            if self.pixel_budget is not None and n > self.pixel_budget:
                raise AggregationBudgetExceeded(region.id, n, self.pixel_budget)
            windows.append(win)

        accs = [_Accumulator(statistic) for _ in windows]
        height, width = data_raster.shape
        for tile in iter_tiles((0, height, 0, width), tile_hint):
            for region, win, acc in zip(regions, windows, accs):
                if win is None:
                    continue
                part = intersect_windows(tile, win)
                if part is not None:
                    self._accumulate(acc, data, data_raster.transform, region, part)

        return [
            ZonalRecord(region_id=r.id, region_name=r.name, statistic=statistic, value=clean_value(acc.result()))
            for r, acc in zip(regions, accs)
        ]
