#!/usr/bin/env python3
"""regionstats.config

Shared configuration utilities for regionstats subsystems.

This module provides common helpers used across regionstats.registry,
regionstats.geo, and the pipeline. Centralizing these avoids duplication and
ensures consistent behavior.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Variable definitions are validated up front so band/scale mistakes fail
  before any raster is read.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from regionstats.errors import ConfigError


BBox = Tuple[float, float, float, float]

VARIABLE_KINDS = ("temporal", "static")
STATISTICS = ("mean", "median", "min", "max", "sum", "count")


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises ConfigError on missing file or invalid format (non-mapping).
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Variable definitions
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class VariableConfig:
    """One raster variable to aggregate (e.g. nighttime lights, elevation).

    `scale` is the ground-sampling distance used for aggregation, in the
    raster CRS units. It is never inferred from the data.
    """

    name: str
    kind: str
    band: str
    scale: float
    statistic: str = "mean"
    band_names: Optional[Tuple[str, ...]] = None
    local_glob: Optional[str] = None
    path: Optional[Path] = None
    date_pattern: str = r"(\d{8})"
    date_format: str = "%Y%m%d"
    rescale_factor: Optional[float] = None
    rescale_offset: float = 0.0
    start_year: Optional[int] = None
    end_year: Optional[int] = None
    tile_hint: Optional[int] = None
    pixel_budget: Optional[int] = None
    bounds: Optional[BBox] = None

    @property
    def is_temporal(self) -> bool:
        return self.kind == "temporal"

    @classmethod
    def from_mapping(cls, name: str, cfg: Dict[str, Any]) -> "VariableConfig":
        if not isinstance(cfg, dict):
            raise ConfigError(f"Variable '{name}' must be a mapping")

        kind = str(cfg.get("kind", "temporal"))
        if kind not in VARIABLE_KINDS:
            raise ConfigError(f"Variable '{name}': kind must be one of {VARIABLE_KINDS}, got '{kind}'")

        band = cfg.get("band")
        if not band:
            raise ConfigError(f"Variable '{name}' missing band")

        if "scale" not in cfg:
            raise ConfigError(f"Variable '{name}' missing scale (ground-sampling distance)")
        scale = _as_float(cfg["scale"], f"{name}.scale")

        statistic = str(cfg.get("statistic", "mean"))

        rescale = cfg.get("rescale") or {}
        if not isinstance(rescale, dict):
            raise ConfigError(f"Variable '{name}': rescale must be a mapping like {{factor: 0.1}}")

        band_names = cfg.get("band_names")
        if band_names is not None:
            band_names = tuple(str(b) for b in band_names)

        known = {
            "kind", "band", "scale", "statistic", "band_names", "local_glob", "path",
            "date_pattern", "date_format", "rescale", "start_year", "end_year",
            "tile_hint", "pixel_budget", "bounds",
        }
        unknown = sorted(set(cfg) - known)
        if unknown:
            raise ConfigError(f"Variable '{name}': unknown key(s) {unknown}")

        out = cls(
            name=name,
            kind=kind,
            band=str(band),
            scale=scale,
            statistic=statistic,
            band_names=band_names,
            local_glob=cfg.get("local_glob"),
            path=Path(cfg["path"]) if cfg.get("path") else None,
            date_pattern=str(cfg.get("date_pattern", cls.date_pattern)),
            date_format=str(cfg.get("date_format", cls.date_format)),
            rescale_factor=_as_float(rescale["factor"], f"{name}.rescale.factor") if "factor" in rescale else None,
            rescale_offset=_as_float(rescale.get("offset", 0.0), f"{name}.rescale.offset"),
            start_year=_as_int(cfg.get("start_year"), f"{name}.start_year"),
            end_year=_as_int(cfg.get("end_year"), f"{name}.end_year"),
            tile_hint=_as_int(cfg.get("tile_hint"), f"{name}.tile_hint"),
            pixel_budget=_as_int(cfg.get("pixel_budget"), f"{name}.pixel_budget"),
            bounds=coerce_bbox(cfg.get("bounds")),
        )
        out.validate()
        return out

    def validate(self) -> None:
        """Check ranges. Called on construction from YAML; call it again after replace()."""
        validate_scale(self.scale)
        validate_statistic(self.statistic)
        if self.tile_hint is not None and self.tile_hint <= 0:
            raise ConfigError(f"Variable '{self.name}': tile_hint must be positive")
        if self.pixel_budget is not None and self.pixel_budget <= 0:
            raise ConfigError(f"Variable '{self.name}': pixel_budget must be positive")
        if self.is_temporal:
            if not self.local_glob:
                raise ConfigError(f"Temporal variable '{self.name}' needs local_glob")
            if self.start_year is not None and self.end_year is not None:
                validate_year_range(self.start_year, self.end_year)
        elif not self.path:
            raise ConfigError(f"Static variable '{self.name}' needs path")


def load_variables(path: Path) -> Dict[str, VariableConfig]:
    """Load every variable block from a variables YAML file."""
    data = load_yaml(path)
    block = data.get("variables")
    if not isinstance(block, dict) or not block:
        raise ConfigError(f"{path} must have a top-level 'variables:' mapping.")
    return {str(name): VariableConfig.from_mapping(str(name), cfg) for name, cfg in block.items()}


def validate_scale(scale: float) -> None:
    if not scale or scale <= 0:
        raise ConfigError(f"scale must be a positive ground-sampling distance, got {scale!r}")


def validate_statistic(statistic: str) -> None:
    if statistic not in STATISTICS:
        raise ConfigError(f"Unsupported statistic '{statistic}'. Choose from {STATISTICS}")


def validate_year_range(start_year: int, end_year: int) -> None:
    if start_year > end_year:
        raise ConfigError(f"start_year ({start_year}) must be <= end_year ({end_year})")


def _as_float(x: Any, label: str) -> float:
    try:
        return float(x)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{label} must be numeric, got {x!r}") from e


def _as_int(x: Any, label: str) -> Optional[int]:
    if x is None:
        return None
    try:
        return int(float(x))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{label} must be an integer, got {x!r}") from e


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------

def coerce_bbox(x: Any) -> Optional[BBox]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
            return (xmin, ymin, xmax, ymax)
        except (TypeError, ValueError):
            return None
    return None


def bbox_intersects(a: BBox, b: BBox) -> bool:
    return a[0] < b[2] and b[0] < a[2] and a[1] < b[3] and b[1] < a[3]


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_VARIABLES_YAML = Path("config/variables.yaml")
DEFAULT_REGIONS_PATH = Path("data/interim/vectors/regions.gpkg")
DEFAULT_OUTPUT_DIR = Path("data/processed/tables")
DEFAULT_FIELDS: List[str] = ["region_name", "period", "statistic_value"]
