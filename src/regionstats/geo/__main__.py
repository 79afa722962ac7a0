#!/usr/bin/env python3
"""regionstats.geo

Zonal statistics CLI for regionstats.

This is one of the regionstats subsystem CLIs:
- regionstats.registry → region catalog checks
- regionstats.geo      → zonal statistics (this file)

Each run aggregates one or more variables from the variables YAML over the
region catalog and writes one CSV per variable:
- temporal variables (nighttime lights, vegetation index): yearly mean
  composites, then the zonal statistic per region and year
- static variables (elevation): the zonal statistic per region, no period

Design notes:
- Uses shared config utilities from regionstats.config
- Lazy-imports raster modules to keep CLI startup fast
- Band and config problems stop the run before any raster is reduced
- --dry-run prints the plan without reading pixels

Examples:
  # Yearly nighttime lights per region
  python -m regionstats.geo --regions data/interim/vectors/regions.gpkg \
    zonal-stats --variable ntl --start-year 2014 --end-year 2020

  # Elevation per region, custom output columns
  python -m regionstats.geo zonal-stats --variable elevation \
    --fields region_name statistic_value
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from regionstats.config import (
    DEFAULT_FIELDS,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_REGIONS_PATH,
    DEFAULT_VARIABLES_YAML,
    VariableConfig,
    format_bbox,
    load_variables,
    validate_year_range,
)
from regionstats.errors import BandNotFoundError, ConfigError, RegionStatsError


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for regionstats.geo.

    Structure:
    - Global args: apply to all subcommands (--variables-yaml, --regions, etc.)
    - Subcommands: one per geo operation
    """
    ap = argparse.ArgumentParser(
        prog="regionstats.geo",
        description="Zonal statistics for regionstats",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m regionstats.registry  # Region catalog
  python -m regionstats.geo       # Zonal statistics (this)
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--variables-yaml",
        type=Path,
        default=DEFAULT_VARIABLES_YAML,
        help=f"Path to variables YAML (default: {DEFAULT_VARIABLES_YAML})",
    )
    ap.add_argument(
        "--regions",
        type=Path,
        default=DEFAULT_REGIONS_PATH,
        help=f"Region polygons file (default: {DEFAULT_REGIONS_PATH})",
    )
    ap.add_argument("--layer", default=None, help="Layer name for multi-layer region files")
    ap.add_argument("--name-field", default=None, help="Column with region names (auto-detected if not specified)")
    ap.add_argument("--id-field", default=None, help="Column with region ids (default: use names)")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without reading rasters")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    # --- zonal-stats ---
    zonal = sub.add_parser(
        "zonal-stats",
        help="Per-region (and per-year) statistics for configured variables",
        description="""
Aggregate raster variables over the region catalog.

This command:
1. Loads variable definitions from the variables YAML
2. Loads and validates the region catalog
3. Temporal variables: groups images by calendar year, composites each year,
   and reduces every composite over all regions
4. Static variables: reduces the single raster region by region
5. Writes one CSV per variable (every region x period present; gaps are empty)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    zonal.add_argument("--variable", nargs="+", required=True, help="Variable name(s) from the variables YAML")
    zonal.add_argument("--start-year", type=int, default=None, help="First year (default from YAML)")
    zonal.add_argument("--end-year", type=int, default=None, help="Last year, inclusive (default from YAML)")
    zonal.add_argument(
        "--out-dir",
        type=Path,
        default=DEFAULT_OUTPUT_DIR,
        help=f"Output directory for CSVs (default: {DEFAULT_OUTPUT_DIR})",
    )
    zonal.add_argument(
        "--fields",
        nargs="+",
        default=None,
        help=f"Output columns (default: {' '.join(DEFAULT_FIELDS)}; static runs drop period)",
    )
    zonal.add_argument("--tile-hint", type=int, default=None, help="Max pixels per internal step (memory only)")
    zonal.add_argument("--workers", type=int, default=1, help="Threads for reducing years in parallel")
    zonal.add_argument(
        "--strategy",
        choices=["batched", "per-region"],
        default=None,
        help="Override the reduction pattern (default: batched for temporal, per-region for static)",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _years(var: VariableConfig, args: argparse.Namespace):
    start = args.start_year if args.start_year is not None else var.start_year
    end = args.end_year if args.end_year is not None else var.end_year
    if start is None or end is None:
        raise ConfigError(f"Temporal variable '{var.name}' needs --start-year/--end-year (or start_year/end_year in YAML)")
    validate_year_range(start, end)
    return start, end


def _describe(var: VariableConfig, args: argparse.Namespace) -> None:
    print(f"[dry-run] Would aggregate '{var.name}' ({var.kind}):")
    if var.is_temporal:
        start, end = _years(var, args)
        print(f"  Rasters: {var.local_glob} (dates {var.date_pattern} as {var.date_format})")
        print(f"  Years: {start}-{end} ({end - start + 1} composites)")
    else:
        print(f"  Raster: {var.path}")
    print(f"  Band: {var.band} | statistic: {var.statistic} | scale: {var.scale}")
    if var.rescale_factor is not None:
        print(f"  Rescale: x{var.rescale_factor} + {var.rescale_offset}")
    if var.bounds:
        print(f"  AOI: {format_bbox(var.bounds)}")
    print(f"  Regions: {args.regions}")
    print(f"  Output: {args.out_dir / (var.name + '_' + var.statistic + '.csv')}")


def _run_variable(var: VariableConfig, catalog, args: argparse.Namespace):
    # Lazy imports: keep CLI startup fast, avoid loading rasterio until needed
    from regionstats.geo.zonal import ZonalReducer
    from regionstats.ingest.collection import linear_rescale
    from regionstats.ingest.readers import collection_from_glob, image_ref, read_image
    from regionstats.pipeline.orchestrator import PipelineOrchestrator, settings_from_variable

    settings = settings_from_variable(var, tile_hint=args.tile_hint)
    orch = PipelineOrchestrator(catalog, ZonalReducer(pixel_budget=var.pixel_budget), max_workers=args.workers)

    if var.is_temporal:
        start, end = _years(var, args)
        collection = collection_from_glob(
            var.local_glob,
            date_pattern=var.date_pattern,
            date_format=var.date_format,
            band_names=var.band_names,
            bbox=var.bounds,
        )
        if var.rescale_factor is not None:
            collection = collection.rescale(var.rescale_factor, var.rescale_offset, bands=[var.band])
        plan = orch.plan_temporal(
            collection, start, end, settings=settings, variable=var.name, strategy=args.strategy
        )
    else:
        if not var.path.exists():
            raise ConfigError(f"Static raster not found: {var.path}")
        ref = image_ref(var.path, band_names=var.band_names, bbox=var.bounds)
        if var.band not in ref.band_names:
            raise BandNotFoundError(var.band, ref.band_names, str(var.path))

        def _load():
            img = read_image(var.path, band_names=var.band_names, bbox=var.bounds).select([var.band])
            if var.rescale_factor is not None:
                img = linear_rescale(var.rescale_factor, var.rescale_offset)(img)
            return img

        plan = orch.plan_static(
            _load,
            settings=settings,
            variable=var.name,
            strategy=args.strategy,
            bounds=ref.bounds,
            crs=ref.crs,
        )

    print(f"[ZONAL] {var.name}: {len(plan.steps)} step(s) x {len(catalog)} regions ({plan.strategy.name})")
    return plan.execute()


def _handle_zonal_stats(args: argparse.Namespace) -> int:
    """Handle the zonal-stats subcommand."""
    try:
        variables = load_variables(args.variables_yaml)
        missing = [v for v in args.variable if v not in variables]
        if missing:
            raise ConfigError(f"Unknown variable(s) {missing}. Defined: {sorted(variables)}")
        selected = [variables[v] for v in args.variable]

        if args.dry_run:
            for var in selected:
                _describe(var, args)
            return 0

        from regionstats.pipeline.export import CsvSink
        from regionstats.registry.catalog import load_catalog

        catalog = load_catalog(args.regions, name_field=args.name_field, id_field=args.id_field, layer=args.layer)
        sink = CsvSink(args.out_dir, overwrite=args.overwrite)

        for var in selected:
            records = _run_variable(var, catalog, args)
            fields = args.fields or (DEFAULT_FIELDS if var.is_temporal else [f for f in DEFAULT_FIELDS if f != "period"])
            destination = f"{var.name}_{var.statistic}"
            sink.write(records, fields, destination)
            n_null = sum(r.value is None for r in records)
            print(f"[ZONAL] {var.name}: {len(records)} records ({n_null} undefined) -> {sink.path_for(destination)}")
    except (RegionStatsError, FileExistsError) as e:
        raise SystemExit(f"zonal-stats failed: {e}") from e

    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for regionstats.geo CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    handlers = {
        "zonal-stats": _handle_zonal_stats,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
