import os
from typing import Dict, List, Optional, Tuple

import geopandas as gpd
import pandas as pd


RAW_DIR = "data_raw"
DATA_DIR = "data"
OUT_DIR = "outputs"

LAYER_EXTS = (".geoparquet", ".parquet", ".geojson", ".shp", ".csv")


def log(msg: str) -> None:
    print(msg, flush=True)


def ensure_crs(gdf: gpd.GeoDataFrame, epsg: int) -> gpd.GeoDataFrame:
    if gdf.crs is None:
        return gdf.set_crs(epsg=epsg)
    return gdf.to_crs(epsg=epsg)


def ensure_wgs84(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    try:
        return ensure_crs(gdf, 4326)
    except Exception:
        return gdf


def scan_dir(dir_path: str) -> Dict[str, Dict[str, str]]:
    layers: Dict[str, Dict[str, str]] = {}
    if not os.path.isdir(dir_path):
        return layers
    for root, _, files in os.walk(dir_path):
        for fn in files:
            base, ext = os.path.splitext(fn)
            ext = ext.lower()
            if ext in LAYER_EXTS:
                layers.setdefault(base.lower(), {})[ext] = os.path.join(root, fn)
    return layers


def resolve_by_keywords(layers: Dict[str, Dict[str, str]], keywords: List[str]) -> Optional[str]:
    # Prefer geoparquet -> parquet -> geojson -> shp -> csv
    keywords = [kw.lower() for kw in keywords]
    for key, entry in layers.items():
        if any(kw in key for kw in keywords):
            for ext in LAYER_EXTS:
                if ext in entry:
                    return entry[ext]
    return None


def load_any(path: str) -> Optional[gpd.GeoDataFrame]:
    try:
        ext = os.path.splitext(path)[1].lower()
        if ext in {".geoparquet", ".parquet"}:
            return gpd.read_parquet(path)
        if ext == ".csv":
            df = pd.read_csv(path, low_memory=False, dtype={"DAUID": str})
            return gpd.GeoDataFrame(df, geometry=None)
        return gpd.read_file(path)
    except Exception as e:
        log(f"[WARN] Failed to read {path}: {e}")
        return None


def center_from_bounds(gdf: gpd.GeoDataFrame) -> Tuple[float, float]:
    try:
        g = ensure_wgs84(gdf)
        minx, miny, maxx, maxy = g.total_bounds
        return ((miny + maxy) / 2, (minx + maxx) / 2)
    except Exception:
        return (49.2488, -122.9805)  # Metro Vancouver approx
