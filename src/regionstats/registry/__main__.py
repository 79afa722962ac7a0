#!/usr/bin/env python3
"""regionstats.registry

Region catalog CLI for regionstats.

This is one of the regionstats subsystem CLIs:
- regionstats.registry → region catalog checks (this file)
- regionstats.geo      → zonal statistics over the catalog

The registry is the source of truth for spatial units. Every variable is
aggregated over the same catalog, so it is validated here once: names must be
present and unique, geometries valid. Invalid geometries are reported, not
repaired.

Examples:
  # Validate a boundary file and print its regions
  python -m regionstats.registry check --regions data/interim/vectors/regions.gpkg

  # Same, with an explicit name column and a QA table of bounds and areas
  python -m regionstats.registry check --regions data/raw/adm1.geojson \
    --name-field NAME_1 --qa-csv data/interim/tables/regions_qa.csv
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd

from regionstats.config import DEFAULT_REGIONS_PATH, format_bbox
from regionstats.errors import RegionStatsError


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for regionstats.registry."""
    ap = argparse.ArgumentParser(
        prog="regionstats.registry",
        description="Region catalog checks for regionstats (source of truth for spatial units)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m regionstats.registry  # Region catalog (this)
  python -m regionstats.geo       # Zonal statistics
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--regions",
        type=Path,
        default=DEFAULT_REGIONS_PATH,
        help=f"Region polygons file (default: {DEFAULT_REGIONS_PATH})",
    )
    ap.add_argument("--layer", default=None, help="Layer name for multi-layer files (GeoPackage)")
    ap.add_argument("--name-field", default=None, help="Column with region names (auto-detected if not specified)")
    ap.add_argument("--id-field", default=None, help="Column with region ids (default: use names)")
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    # --- check ---
    check = sub.add_parser(
        "check",
        help="Validate the region catalog and print a summary",
        description="""
Load the region file exactly as the pipeline will and report problems.

This command:
1. Reads the polygons (any format geopandas can open)
2. Picks the name column (or uses --name-field)
3. Rejects missing/duplicate names and invalid geometries
4. Prints each region with its bounds (and area when --area-crs is set)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    check.add_argument(
        "--area-crs",
        default=None,
        help="Equal-area CRS for area_km2 (e.g. EPSG:6933); skipped if not given",
    )
    check.add_argument(
        "--qa-csv",
        type=Path,
        default=None,
        help="Optional path to write a QA CSV (id, name, bounds, area)",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _summary_frame(catalog, area_crs: Optional[str]) -> pd.DataFrame:
    """One row per region: id, name, bounds, and optional area in km²."""
    gdf = catalog.to_geodataframe()
    bounds = gdf.geometry.bounds
    df = pd.DataFrame(
        {
            "region_id": gdf["region_id"],
            "region_name": gdf["region_name"],
            "xmin": bounds["minx"],
            "ymin": bounds["miny"],
            "xmax": bounds["maxx"],
            "ymax": bounds["maxy"],
        }
    )
    if area_crs:
        if gdf.crs is None:
            raise SystemExit("Regions have no CRS; can't compute area safely.")
        df["area_km2"] = (gdf.to_crs(area_crs).geometry.area / 1_000_000.0).astype(float)
    return df


def _handle_check(args: argparse.Namespace) -> int:
    # Lazy import: keeps CLI startup fast, avoids loading geopandas until needed
    from regionstats.registry.catalog import load_catalog

    try:
        catalog = load_catalog(args.regions, name_field=args.name_field, id_field=args.id_field, layer=args.layer)
    except RegionStatsError as e:
        raise SystemExit(f"Region catalog check failed: {e}") from e

    df = _summary_frame(catalog, args.area_crs)

    print(f"[REGISTRY] {len(catalog)} regions OK in {args.regions} (crs={catalog.crs})")
    print(f"  Extent: {format_bbox(catalog.bounds)}")
    for _, row in df.iterrows():
        area = f" | area_km2={row['area_km2']:.1f}" if "area_km2" in df.columns else ""
        print(f"  - {row['region_id']} | {row['region_name']}{area}")

    if args.qa_csv:
        args.qa_csv.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(args.qa_csv, index=False)
        print(f"Wrote QA table -> {args.qa_csv}")

    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for regionstats.registry CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    handlers = {
        "check": _handle_check,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
