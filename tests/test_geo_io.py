import geopandas as gpd
import pandas as pd

from geo_io import center_from_bounds, ensure_crs, load_any, resolve_by_keywords, scan_dir


def test_scan_and_resolve_prefers_geoparquet(tmp_path, da_layer):
    sub = tmp_path / "nested"
    sub.mkdir()
    da_layer.to_parquet(sub / "da_joined.geoparquet")
    pd.DataFrame({"DAUID": ["0001"]}).to_csv(sub / "da_joined.csv", index=False)
    (tmp_path / "notes.txt").write_text("ignored")

    layers = scan_dir(str(tmp_path))
    assert set(layers["da_joined"]) == {".geoparquet", ".csv"}
    assert "notes" not in layers
    assert resolve_by_keywords(layers, ["DA_JOINED"]).endswith(".geoparquet")
    assert resolve_by_keywords(layers, ["missing"]) is None
    assert scan_dir(str(tmp_path / "nope")) == {}


def test_load_any_keeps_dauid_as_string(tmp_path):
    path = tmp_path / "table.csv"
    pd.DataFrame({"DAUID": ["00012"], "income": [1.0]}).to_csv(path, index=False)
    df = load_any(str(path))
    assert df.loc[0, "DAUID"] == "00012"
    assert load_any(str(tmp_path / "broken.geojson")) is None


def test_crs_helpers(da_layer):
    projected = ensure_crs(da_layer, 3347)
    assert projected.crs.to_epsg() == 3347
    bare = gpd.GeoDataFrame(da_layer.drop(columns="geometry"), geometry=list(da_layer.geometry))
    assert ensure_crs(bare, 4326).crs.to_epsg() == 4326
    lat, lon = center_from_bounds(projected)
    assert 49.2 < lat < 49.3
    assert -123.2 < lon < -123.1
