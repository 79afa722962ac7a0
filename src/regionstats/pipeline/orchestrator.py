#!/usr/bin/env python3
"""orchestrator.py

Drive rasters through zonal reduction and flatten the results.

Two paths, one output shape:
- temporal: TemporalCompositor -> one composite per year -> BatchedStrategy
  (one tiled pass per composite, all regions at once) -> tag each record
  with its year -> flatten (years ascending, catalog order inside a year)
- static: one raster, no compositor -> PerRegionStrategy (clip and reduce
  each region on its own) -> records with period None

Build, then materialize:
- plan_temporal() / plan_static() only validate inputs and describe the
  work (a ZonalPlan); no pixels are read
- ZonalPlan.execute() runs it

Failure policy:
- band and configuration errors raise while planning, before any reduction
- a region over the pixel budget becomes a None value plus a warning, and
  the run carries on
- empty years become None values (see TemporalCompositor)

Each (region, period) reduction is independent, so periods may run on a
thread pool (max_workers > 1); output order and values don't change.
Geometry work (reprojecting the catalog, building catalogs) happens while
planning, on the calling thread. Raster reads and compositing are serialized
by a per-plan lock; only the reductions overlap.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from regionstats.config import BBox, VariableConfig, validate_scale, validate_statistic
from regionstats.errors import AggregationBudgetExceeded, ConfigError
from regionstats.geo.composite import TemporalCompositor
from regionstats.geo.zonal import ZonalReducer
from regionstats.ingest.collection import RasterCollection, RasterImage
from regionstats.pipeline.records import ZonalRecord, flatten
from regionstats.registry.catalog import Region, RegionCatalog

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReductionSettings:
    """What every reduction in a run shares."""

    statistic: str = "mean"
    scale: float = 0.0
    tile_hint: Optional[int] = None
    band: Optional[str] = None

    def validate(self) -> None:
        ZonalReducer.check_inputs(self.statistic, self.scale, self.tile_hint)


# -----------------------------------------------------------------------------
# Strategies
# -----------------------------------------------------------------------------

class ZonalAggregationStrategy:
    """Reduce one raster over a catalog into one record per region, in catalog order."""

    name = "base"

    def __init__(self, reducer: ZonalReducer):
        self.reducer = reducer

    def aggregate(self, raster: Optional[RasterImage], catalog: RegionCatalog, settings: ReductionSettings) -> List[ZonalRecord]:
        raise NotImplementedError

    @staticmethod
    def undefined(region: Region, settings: ReductionSettings) -> ZonalRecord:
        return ZonalRecord(region_id=region.id, region_name=region.name, statistic=settings.statistic, value=None)

    def _over_budget(self, region: Region, err: AggregationBudgetExceeded) -> None:
        log.warning("Skipping region '%s' (%s): %s; value set to None", region.name, region.id, err)


class BatchedStrategy(ZonalAggregationStrategy):
    """All regions in one tiled pass; over-budget regions are filtered out first."""

    name = "batched"

    def aggregate(self, raster, catalog, settings):
        if raster is None:
            return [self.undefined(r, settings) for r in catalog]

        resampled = self.reducer.resample(raster, settings.scale)
        regions = self.reducer.prepare_regions(catalog, resampled)

        ok: List[Region] = []
        for region in regions:
            try:
                self.reducer.check_budget(resampled, region)
            except AggregationBudgetExceeded as err:
                self._over_budget(region, err)
            else:
                ok.append(region)

        by_id: Dict[str, ZonalRecord] = {}
        if ok:
            for rec in self.reducer.reduce(
                resampled,
                ok,
                statistic=settings.statistic,
                scale=settings.scale,
                tile_hint=settings.tile_hint,
                band=settings.band,
            ):
                by_id[rec.region_id] = rec
        return [by_id.get(r.id) or self.undefined(r, settings) for r in regions]


class PerRegionStrategy(ZonalAggregationStrategy):
    """Clip and reduce one region at a time."""

    name = "per-region"

    def aggregate(self, raster, catalog, settings):
        if raster is None:
            return [self.undefined(r, settings) for r in catalog]

        resampled = self.reducer.resample(raster, settings.scale)
        regions = self.reducer.prepare_regions(catalog, resampled)

        out: List[ZonalRecord] = []
        for region in regions:
            try:
                rec = self.reducer.reduce_region(
                    resampled,
                    region,
                    statistic=settings.statistic,
                    scale=settings.scale,
                    tile_hint=settings.tile_hint,
                    band=settings.band,
                )
            except AggregationBudgetExceeded as err:
                self._over_budget(region, err)
                rec = self.undefined(region, settings)
            out.append(rec)
        return out


STRATEGIES = {
    BatchedStrategy.name: BatchedStrategy,
    PerRegionStrategy.name: PerRegionStrategy,
}


def strategy_for(temporal: bool, reducer: ZonalReducer, override: Optional[str] = None) -> ZonalAggregationStrategy:
    """Batched for temporal inputs, per-region for static ones, unless overridden."""
    name = override or (BatchedStrategy.name if temporal else PerRegionStrategy.name)
    if name not in STRATEGIES:
        raise ConfigError(f"Unknown strategy '{name}'. Choose from {sorted(STRATEGIES)}")
    return STRATEGIES[name](reducer)


# -----------------------------------------------------------------------------
# Plans
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class PlanStep:
    period: Optional[int]
    raster: Callable[[], Optional[RasterImage]]


@dataclass(frozen=True)
class ZonalPlan:
    """A described, not yet executed, zonal aggregation run.

    `catalog` is already in the raster CRS when that CRS was known at plan time.
    """

    variable: Optional[str]
    catalog: RegionCatalog
    steps: Tuple[PlanStep, ...]
    strategy: ZonalAggregationStrategy
    settings: ReductionSettings
    max_workers: int = 1
    temporal: bool = True
    _read_lock: Any = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def periods(self) -> List[Optional[int]]:
        return [s.period for s in self.steps]

    @property
    def expected_records(self) -> int:
        return len(self.steps) * len(self.catalog)

    def _run_step(self, step: PlanStep) -> List[ZonalRecord]:
        # rasterio reads are not safe to interleave across threads
        with self._read_lock:
            raster = step.raster()
        records = self.strategy.aggregate(raster, self.catalog, self.settings)
        log.info(
            "Reduced %s%s over %d regions (%d undefined)",
            self.variable or "raster",
            f" {step.period}" if step.period is not None else "",
            len(records),
            sum(r.value is None for r in records),
        )
        return records

    def execute(self) -> List[ZonalRecord]:
        """Materialize: read, composite, reduce, tag, and flatten."""
        if self.max_workers > 1 and len(self.steps) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(self._run_step, self.steps))
        else:
            results = [self._run_step(s) for s in self.steps]

        if self.temporal:
            records = flatten({s.period: recs for s, recs in zip(self.steps, results)})
        else:
            records = [r for recs in results for r in recs]
        if self.variable:
            records = [r.tagged(variable=self.variable) for r in records]

        if len(records) != self.expected_records:
            raise RuntimeError(f"Produced {len(records)} records, expected {self.expected_records}")
        return records


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------

class PipelineOrchestrator:
    """Stateless driver: each run is a function of (catalog, raster input, settings)."""

    def __init__(self, catalog: RegionCatalog, reducer: Optional[ZonalReducer] = None, max_workers: int = 1):
        if len(catalog) == 0:
            raise ConfigError("Region catalog is empty")
        self.catalog = catalog
        self.reducer = reducer or ZonalReducer()
        self.max_workers = max(1, int(max_workers))

    def _check_grid(self, settings: ReductionSettings, bounds: Optional[BBox], crs: Any) -> RegionCatalog:
        """Scale check against the raster extent, and the catalog in the raster CRS."""
        if bounds is not None:
            self.reducer.check_scale_fits(settings.scale, bounds)
        return self.catalog.to_crs(crs)

    def plan_temporal(
        self,
        collection: RasterCollection,
        start_year: int,
        end_year: int,
        *,
        settings: ReductionSettings,
        composite_statistic: str = "mean",
        bands: Optional[Sequence[str]] = None,
        variable: Optional[str] = None,
        strategy: Optional[str] = None,
    ) -> ZonalPlan:
        settings.validate()
        if bands is not None:
            collection = collection.select_bands(bands)
        elif settings.band is not None:
            collection = collection.select_bands([settings.band])
        compositor = TemporalCompositor(collection, start_year, end_year, statistic=composite_statistic)

        # composites land on the first image's grid
        catalog = self.catalog
        if collection.refs:
            first = collection.refs[0]
            catalog = self._check_grid(settings, first.bounds, first.crs)

        steps = tuple(
            PlanStep(period=year, raster=(lambda year=year: compositor.composite(year).image))
            for year in compositor.periods
        )
        log.debug("Planned %s over %d years: %r", variable or "raster", len(steps), compositor)
        return ZonalPlan(
            variable=variable,
            catalog=catalog,
            steps=steps,
            strategy=strategy_for(True, self.reducer, strategy),
            settings=settings,
            max_workers=self.max_workers,
            temporal=True,
        )

    def plan_static(
        self,
        raster: Callable[[], RasterImage],
        *,
        settings: ReductionSettings,
        variable: Optional[str] = None,
        strategy: Optional[str] = None,
        bounds: Optional[BBox] = None,
        crs: Any = None,
    ) -> ZonalPlan:
        """`raster` is a zero-argument loader so planning stays free of I/O.

        Pass the raster's `bounds` and `crs` (from its header) to have the
        scale checked and the catalog reprojected while planning.
        """
        settings.validate()
        return ZonalPlan(
            variable=variable,
            catalog=self._check_grid(settings, bounds, crs),
            steps=(PlanStep(period=None, raster=raster),),
            strategy=strategy_for(False, self.reducer, strategy),
            settings=settings,
            max_workers=1,
            temporal=False,
        )

    def run_temporal(self, collection: RasterCollection, start_year: int, end_year: int, **kwargs) -> List[ZonalRecord]:
        return self.plan_temporal(collection, start_year, end_year, **kwargs).execute()

    def run_static(self, raster: RasterImage, *, settings: ReductionSettings, **kwargs) -> List[ZonalRecord]:
        if settings.band is not None:
            raster.band(settings.band)  # missing band is fatal before any reduction
        return self.plan_static(
            lambda: raster, settings=settings, bounds=raster.bounds, crs=raster.crs, **kwargs
        ).execute()


def settings_from_variable(var: VariableConfig, tile_hint: Optional[int] = None) -> ReductionSettings:
    validate_scale(var.scale)
    validate_statistic(var.statistic)
    return ReductionSettings(
        statistic=var.statistic,
        scale=var.scale,
        tile_hint=tile_hint if tile_hint is not None else var.tile_hint,
        band=var.band,
    )
