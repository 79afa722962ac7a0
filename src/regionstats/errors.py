#!/usr/bin/env python3
"""regionstats.errors

Exception and warning types shared across regionstats subsystems.

Two families:
- Fatal errors (bad band, bad config, bad geometry) surface to the caller
  before any reduction work starts.
- Local failures (one region over its pixel budget, one empty year) are
  recovered where they happen and show up as None values in the output.
"""

from __future__ import annotations

from typing import Iterable, Optional


class RegionStatsError(Exception):
    """Base class for regionstats errors."""


class ConfigError(RegionStatsError, ValueError):
    """Configuration is missing, malformed, or out of range."""


class InvalidRegionError(RegionStatsError, ValueError):
    """A region failed validation at catalog load time."""


class BandNotFoundError(RegionStatsError, KeyError):
    """A requested band is absent from a raster."""

    def __init__(self, band: str, available: Iterable[str] = (), source: Optional[str] = None):
        self.band = band
        self.available = tuple(available)
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"Band '{band}' not found{where}. Available bands: {list(self.available)}")

    def __str__(self) -> str:
        # KeyError.__str__ repr()s the message; keep it readable
        return str(self.args[0])


class AggregationBudgetExceeded(RegionStatsError):
    """A single region's reduction would materialize more pixels than allowed."""

    def __init__(self, region_id: str, n_pixels: int, budget: int):
        self.region_id = region_id
        self.n_pixels = int(n_pixels)
        self.budget = int(budget)
        super().__init__(
            f"Region '{region_id}' covers {self.n_pixels:,} pixels, "
            f"over the processing budget of {self.budget:,}"
        )


class EmptyBucketWarning(UserWarning):
    """A compositing period had no contributing images."""
