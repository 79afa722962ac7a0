#!/usr/bin/env python3

from __future__ import annotations

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import Polygon

from fake_raster import split_values, two_region_catalog, write_geotiff, write_regions
from regionstats.geo import __main__ as geo_cli
from regionstats.registry import __main__ as registry_cli


VARIABLES = """
variables:
  ntl:
    kind: temporal
    local_glob: "{glob}"
    date_pattern: "ntl_(\\\\d{{8}})"
    date_format: "%Y%m%d"
    band: v
    band_names: [v]
    scale: 10
    start_year: 2000
    end_year: 2001
  elevation:
    kind: static
    path: "{dem}"
    band: elevation
    band_names: [elevation]
    scale: 10
"""


@pytest.fixture
def project(tmp_path):
    """Regions, rasters and a variables YAML laid out like a real run."""
    regions = write_regions(tmp_path / "regions.gpkg", two_region_catalog())

    ntl = tmp_path / "ntl"
    ntl.mkdir()
    for stamp in ("20000301", "20001101", "20010501"):
        write_geotiff(ntl / f"ntl_{stamp}.tif", [split_values(10, 20)])
    dem = write_geotiff(tmp_path / "dem.tif", [split_values(100, 300)])

    yaml_path = tmp_path / "variables.yaml"
    yaml_path.write_text(VARIABLES.format(glob=(ntl / "*.tif").as_posix(), dem=dem.as_posix()))
    return {"root": tmp_path, "regions": regions, "yaml": yaml_path, "out": tmp_path / "tables"}


def _geo_args(project, *extra):
    return [
        "--variables-yaml", str(project["yaml"]),
        "--regions", str(project["regions"]),
        *extra,
    ]


def test_zonal_stats_writes_one_csv_per_variable(project):
    rc = geo_cli.main(
        _geo_args(project, "zonal-stats", "--variable", "ntl", "elevation", "--out-dir", str(project["out"]))
    )
    assert rc == 0

    ntl = pd.read_csv(project["out"] / "ntl_mean.csv")
    assert list(ntl.columns) == ["region_name", "period", "statistic_value"]
    assert ntl.values.tolist() == [
        ["Region A", 2000, 10.0],
        ["Region B", 2000, 20.0],
        ["Region A", 2001, 10.0],
        ["Region B", 2001, 20.0],
    ]

    elev = pd.read_csv(project["out"] / "elevation_mean.csv")
    assert list(elev.columns) == ["region_name", "statistic_value"]
    assert elev.values.tolist() == [["Region A", 100.0], ["Region B", 300.0]]


def test_zonal_stats_year_override_and_fields(project):
    rc = geo_cli.main(
        _geo_args(
            project,
            "zonal-stats", "--variable", "ntl",
            "--start-year", "2001", "--end-year", "2002",
            "--fields", "region_id", "year", "statistic_value",
            "--tile-hint", "16",
            "--out-dir", str(project["out"]),
        )
    )
    assert rc == 0
    df = pd.read_csv(project["out"] / "ntl_mean.csv")
    assert list(df.columns) == ["region_id", "year", "statistic_value"]
    assert df["year"].tolist() == [2001, 2001, 2002, 2002]
    assert df["statistic_value"].iloc[:2].tolist() == [10.0, 20.0]
    assert df["statistic_value"].iloc[2:].isna().all()


def test_zonal_stats_refuses_to_overwrite(project):
    args = _geo_args(project, "zonal-stats", "--variable", "elevation", "--out-dir", str(project["out"]))
    assert geo_cli.main(args) == 0
    with pytest.raises(SystemExit, match="exists"):
        geo_cli.main(args)
    assert geo_cli.main(_geo_args(project, "--overwrite", *args[4:])) == 0


def test_dry_run_reads_nothing(project, capsys):
    rc = geo_cli.main(
        _geo_args(project, "--dry-run", "zonal-stats", "--variable", "ntl", "--out-dir", str(project["out"]))
    )
    assert rc == 0
    out = capsys.readouterr().out
    assert "[dry-run] Would aggregate 'ntl' (temporal)" in out
    assert "Years: 2000-2001 (2 composites)" in out
    assert not project["out"].exists()


def test_unknown_variable_and_band(project):
    with pytest.raises(SystemExit, match="Unknown variable"):
        geo_cli.main(_geo_args(project, "zonal-stats", "--variable", "rainfall"))

    text = project["yaml"].read_text().replace("band: v\n", "band: avg_rad\n")
    project["yaml"].write_text(text)
    with pytest.raises(SystemExit, match="Band 'avg_rad' not found"):
        geo_cli.main(_geo_args(project, "zonal-stats", "--variable", "ntl", "--out-dir", str(project["out"])))
    assert not project["out"].exists()


def test_registry_check(project, capsys, tmp_path):
    qa = tmp_path / "qa" / "regions.csv"
    rc = registry_cli.main(["--regions", str(project["regions"]), "check", "--qa-csv", str(qa)])
    assert rc == 0
    out = capsys.readouterr().out
    assert "[REGISTRY] 2 regions OK" in out
    df = pd.read_csv(qa)
    assert df["region_name"].tolist() == ["Region A", "Region B"]
    assert df[["xmin", "xmax"]].values.tolist() == [[0.0, 100.0], [100.0, 200.0]]


def test_registry_check_rejects_invalid_geometry(tmp_path):
    bowtie = Polygon([(0, 0), (1, 1), (1, 0), (0, 1)])
    gdf = gpd.GeoDataFrame(
        {"name": ["Fine", "Bowtie"]},
        geometry=[Polygon([(0, 0), (1, 0), (1, 1)]), bowtie],
        crs="EPSG:4326",
    )
    path = tmp_path / "bad.gpkg"
    gdf.to_file(path, driver="GPKG")

    with pytest.raises(SystemExit, match="invalid geometry"):
        registry_cli.main(["--regions", str(path), "check"])


def test_zonal_stats_applies_rescale_once(project):
    text = project["yaml"].read_text().replace(
        "    scale: 10\n    start_year", "    scale: 10\n    rescale: {factor: 0.01}\n    start_year"
    )
    project["yaml"].write_text(text)
    rc = geo_cli.main(_geo_args(project, "zonal-stats", "--variable", "ntl", "--out-dir", str(project["out"])))
    assert rc == 0
    df = pd.read_csv(project["out"] / "ntl_mean.csv")
    assert df["statistic_value"].tolist() == pytest.approx([0.1, 0.2, 0.1, 0.2])


@pytest.mark.parametrize("variable", ["ntl", "elevation"])
def test_zonal_stats_rejects_scale_beyond_extent(project, variable):
    # the rasters are 200 x 100 CRS units; 500 is a metre scale on the wrong grid
    project["yaml"].write_text(project["yaml"].read_text().replace("scale: 10\n", "scale: 500\n"))
    with pytest.raises(SystemExit, match="larger than the raster extent"):
        geo_cli.main(_geo_args(project, "zonal-stats", "--variable", variable, "--out-dir", str(project["out"])))
    assert not project["out"].exists()
