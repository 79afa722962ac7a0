#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from fake_raster import make_image, two_region_catalog  # noqa: E402


@pytest.fixture
def catalog():
    """Regions A (left half of the test grid) and B (right half)."""
    return two_region_catalog()


@pytest.fixture
def scenario_images():
    """Three images, band 'v', 10 over A and 20 over B: 2000-03, 2000-11, 2001-05."""
    return [
        make_image(10, 20, timestamp="2000-03-01"),
        make_image(10, 20, timestamp="2000-11-01"),
        make_image(10, 20, timestamp="2001-05-01"),
    ]
