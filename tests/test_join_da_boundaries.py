import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import box

from join_da_boundaries import join_attributes, load_da_boundaries, normalize_dauid


@pytest.fixture
def boundaries():
    return gpd.GeoDataFrame(
        {
            "DAUID": ["59150001", "59150002", "59150003", "59330001"],
            "CMANAME": ["Vancouver", "Vancouver", "Vancouver", "Kelowna"],
            "geometry": [box(0, 0, 1, 1), box(1, 0, 2, 1), box(2, 0, 3, 1), box(9, 9, 10, 10)],
        },
        crs=3347,
    )


def test_load_filters_by_cma(tmp_path, boundaries):
    path = tmp_path / "lda_000b16a_e.geojson"
    boundaries.to_file(path, driver="GeoJSON")
    gdf = load_da_boundaries(str(path), "Vancouver")
    assert sorted(gdf["DAUID"]) == ["59150001", "59150002", "59150003"]


def test_load_falls_back_to_prefix(tmp_path, boundaries):
    path = tmp_path / "da.geojson"
    boundaries.drop(columns=["CMANAME"]).to_file(path, driver="GeoJSON")
    gdf = load_da_boundaries(str(path), "Vancouver", da_prefix="5933")
    assert gdf["DAUID"].tolist() == ["59330001"]


def test_join_keeps_every_polygon(boundaries):
    table = pd.DataFrame({
        "DAUID": ["59150001", "59150003", "59990001"],
        "income": [50000.0, 80000.0, 1.0],
        "prox_idx_parks": [0.2, None, 0.5],
    })
    joined = join_attributes(boundaries, table)
    assert isinstance(joined, gpd.GeoDataFrame)
    assert joined.crs == boundaries.crs
    assert len(joined) == len(boundaries)
    by_id = joined.set_index("DAUID")
    assert by_id.loc["59150001", "income"] == 50000.0
    assert pd.isna(by_id.loc["59150002", "income"])
    assert pd.isna(by_id.loc["59150003", "prox_idx_parks"])
    assert "59990001" not in by_id.index


def test_join_rejects_duplicate_ids(boundaries):
    table = pd.DataFrame({"DAUID": ["59150001", "59150001"], "income": [1.0, 2.0]})
    with pytest.raises(ValueError):
        join_attributes(boundaries, table)


def test_normalize_dauid_strips_float_suffix():
    assert normalize_dauid(pd.Series([59150001.0, " 59150002 "])).tolist() == ["59150001", "59150002"]
