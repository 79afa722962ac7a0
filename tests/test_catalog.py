#!/usr/bin/env python3

from __future__ import annotations

import geopandas as gpd
import pytest
from shapely.geometry import Point, Polygon, box

from regionstats.errors import InvalidRegionError
from regionstats.registry import catalog as cat
from regionstats.registry.catalog import Region, RegionCatalog, load_catalog


def test_normalize_id_nums_and_strings():
    assert cat._normalize_id("07") == "7"
    assert cat._normalize_id(" 7 ") == "7"
    assert cat._normalize_id(7) == "7"
    assert cat._normalize_id(7.0) == "7"
    assert cat._normalize_id("IN-MH") == "IN-MH"


def test_normalize_id_emptyish_inputs():
    assert cat._normalize_id(None) == ""
    assert cat._normalize_id("") == ""
    assert cat._normalize_id(" ") == ""
    assert cat._normalize_id(float("nan")) == ""


def test_pick_name_field_prefers_name_columns():
    assert cat._pick_name_field(["GID_1", "NAME_1", "geometry"]) == "NAME_1"
    assert cat._pick_name_field(["id", "name", "geometry"]) == "name"
    assert cat._pick_name_field(["shapeID", "shapeName", "geometry"]) == "shapeName"


def test_pick_name_field_explicit_and_unsure():
    assert cat._pick_name_field(["a", "b"], preferred="b") == "b"
    with pytest.raises(InvalidRegionError):
        cat._pick_name_field(["a", "b"], preferred="c")
    with pytest.raises(InvalidRegionError):
        cat._pick_name_field(["code", "area", "geometry"])


def test_catalog_keeps_order_and_ids(catalog):
    assert catalog.ids == ["A", "B"]
    assert catalog.names == ["Region A", "Region B"]
    assert len(catalog) == 2
    assert catalog.get("B").name == "Region B"
    assert catalog.bounds == (0.0, 0.0, 200.0, 100.0)


def test_duplicate_names_rejected():
    with pytest.raises(InvalidRegionError, match="Duplicate region name"):
        RegionCatalog([Region("1", "X", box(0, 0, 1, 1)), Region("2", "X", box(1, 1, 2, 2))])


def test_invalid_geometry_rejected_not_repaired():
    bowtie = Polygon([(0, 0), (1, 1), (1, 0), (0, 1)])
    assert not bowtie.is_valid
    with pytest.raises(InvalidRegionError, match="invalid geometry"):
        RegionCatalog([Region("1", "Bowtie", bowtie)])


def test_empty_and_non_polygon_geometries_rejected():
    with pytest.raises(InvalidRegionError, match="empty"):
        RegionCatalog([Region("1", "Empty", Polygon())])
    with pytest.raises(InvalidRegionError, match="expected a polygon"):
        RegionCatalog([Region("1", "Dot", Point(0, 0))])


def test_from_geodataframe_with_id_field():
    gdf = gpd.GeoDataFrame(
        {"CODE": ["07", "12"], "NAME_1": ["North", "South"]},
        geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)],
        crs="EPSG:4326",
    )
    catalog = RegionCatalog.from_geodataframe(gdf, id_field="CODE")
    assert catalog.ids == ["7", "12"]
    assert catalog.names == ["North", "South"]


def test_from_geodataframe_missing_name():
    gdf = gpd.GeoDataFrame({"name": ["North", None]}, geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)])
    with pytest.raises(InvalidRegionError, match="missing a name"):
        RegionCatalog.from_geodataframe(gdf)


def test_to_crs_returns_new_catalog(catalog):
    same = catalog.to_crs("EPSG:3857")
    assert same is catalog

    lonlat = catalog.to_crs("EPSG:4326")
    assert lonlat is not catalog
    assert lonlat.ids == catalog.ids
    # source catalog untouched
    assert catalog[0].geometry.bounds == (0.0, 0.0, 100.0, 100.0)
    assert lonlat[0].geometry.bounds[2] < 0.01


def test_load_catalog_from_geopackage(tmp_path):
    gdf = gpd.GeoDataFrame(
        {"NAME_1": ["North", "South"]},
        geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)],
        crs="EPSG:4326",
    )
    path = tmp_path / "regions.gpkg"
    gdf.to_file(path, driver="GPKG")

    catalog = load_catalog(path)
    assert catalog.names == ["North", "South"]
    assert catalog.ids == ["North", "South"]


def test_load_catalog_missing_file(tmp_path):
    with pytest.raises(InvalidRegionError, match="not found"):
        load_catalog(tmp_path / "nope.gpkg")
