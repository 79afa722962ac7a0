#!/usr/bin/env python3

from __future__ import annotations

from datetime import datetime

import numpy as np
import pytest

from fake_raster import split_values, write_geotiff
from regionstats.errors import ConfigError
from regionstats.ingest.readers import collection_from_glob, image_ref, parse_timestamp, read_image


@pytest.fixture
def two_band_tif(tmp_path):
    avg = split_values(10, 20)
    avg[0, 0] = -9999.0
    cf = np.full(avg.shape, 3.0)
    return write_geotiff(tmp_path / "VNL_201403_avg.tif", [avg, cf], descriptions=["avg_rad", "cf_cvg"])


def test_read_image_names_bands_and_masks_nodata(two_band_tif):
    img = read_image(two_band_tif, timestamp=datetime(2014, 3, 1))
    assert img.band_names == ("avg_rad", "cf_cvg")
    assert img.timestamp == datetime(2014, 3, 1)
    assert img.shape == (10, 20)
    assert img.bounds == (0.0, 0.0, 200.0, 100.0)
    avg = img.band("avg_rad")
    assert np.isnan(avg[0, 0])
    assert avg[0, 1] == 10.0
    assert avg[0, 19] == 20.0


def test_band_names_explicit_and_default(tmp_path, two_band_tif):
    img = read_image(two_band_tif, band_names=["a", "b"])
    assert img.band_names == ("a", "b")

    with pytest.raises(ConfigError, match="2 bands"):
        read_image(two_band_tif, band_names=["only_one"])

    plain = write_geotiff(tmp_path / "plain.tif", [split_values(1, 2)])
    assert read_image(plain).band_names == ("b1",)


def test_read_window_for_bbox(two_band_tif):
    img = read_image(two_band_tif, bbox=(100, 0, 200, 100), bbox_crs="EPSG:3857")
    assert img.shape == (10, 10)
    assert img.bounds == (100.0, 0.0, 200.0, 100.0)
    assert np.all(img.band("avg_rad") == 20.0)


def test_image_ref_reads_header_only(two_band_tif):
    ref = image_ref(two_band_tif, timestamp=datetime(2014, 3, 1))
    assert ref.band_names == ("avg_rad", "cf_cvg")
    assert ref.bounds == (0.0, 0.0, 200.0, 100.0)
    assert ref.load().band("cf_cvg")[5, 5] == 3.0


def test_parse_timestamp():
    assert parse_timestamp("VNL_201403_avg.tif", r"VNL_(\d{6})", "%Y%m") == datetime(2014, 3, 1)
    assert parse_timestamp("vhi_2005123.tif", r"(\d{7})", "%Y%j") == datetime(2005, 5, 3)
    with pytest.raises(ConfigError, match="No date"):
        parse_timestamp("dem.tif", r"(\d{8})", "%Y%m%d")
    with pytest.raises(ConfigError, match="doesn't match"):
        parse_timestamp("VNL_201413.tif", r"VNL_(\d{6})", "%Y%m")


def test_collection_from_glob(tmp_path):
    folder = tmp_path / "ntl"
    folder.mkdir()
    for stamp, value in (("20010501", 3.0), ("20000301", 1.0), ("20001101", 2.0)):
        write_geotiff(folder / f"ntl_{stamp}.tif", [np.full((10, 20), value)])

    coll = collection_from_glob("ntl/*.tif", band_names=["v"], root=tmp_path)
    assert len(coll) == 3
    assert coll.timestamps == [datetime(2000, 3, 1), datetime(2000, 11, 1), datetime(2001, 5, 1)]
    assert coll.band_names == ("v",)
    assert [float(img.band("v")[0, 0]) for img in coll] == [1.0, 2.0, 3.0]


def test_collection_from_glob_no_matches(tmp_path):
    assert len(collection_from_glob("missing/*.tif", root=tmp_path)) == 0
