import matplotlib

matplotlib.use("Agg")

import geopandas as gpd  # noqa: E402
import numpy as np  # noqa: E402
import pytest  # noqa: E402
from shapely.geometry import box  # noqa: E402


@pytest.fixture
def da_layer() -> gpd.GeoDataFrame:
    """4 x 3 grid of small DA squares near Vancouver with two numeric attributes."""
    rows = []
    k = 0
    for i in range(4):
        for j in range(3):
            x0, y0 = -123.2 + i * 0.02, 49.2 + j * 0.02
            rows.append({
                "DAUID": f"5915{k:04d}",
                "income": 40000.0 + 5000.0 * k,
                "prox_idx_parks": 0.01 * ((k * 7) % 12),
                "geometry": box(x0, y0, x0 + 0.02, y0 + 0.02),
            })
            k += 1
    gdf = gpd.GeoDataFrame(rows, geometry="geometry", crs=4326)
    gdf.loc[2, "income"] = np.nan
    gdf.loc[5, "prox_idx_parks"] = np.nan
    return gdf
