import argparse
import os
import sys
from typing import Optional

import geopandas as gpd
import pandas as pd

from geo_io import DATA_DIR, RAW_DIR, log, resolve_by_keywords, scan_dir


CMA_NAME = "Vancouver"
DA_PREFIX = "5915"


def normalize_dauid(s: pd.Series) -> pd.Series:
    return s.astype(str).str.strip().str.replace(r"\.0$", "", regex=True)


def load_da_boundaries(path: str, cma_name: Optional[str] = CMA_NAME, da_prefix: Optional[str] = DA_PREFIX) -> gpd.GeoDataFrame:
    """Read DA polygons and keep those in one CMA.

    Uses CMANAME when the file carries it, otherwise a DAUID prefix.
    """
    gdf = gpd.read_file(path)
    if "DAUID" not in gdf.columns:
        raise ValueError(f"{path} has no DAUID column")
    gdf["DAUID"] = normalize_dauid(gdf["DAUID"])
    if cma_name and "CMANAME" in gdf.columns:
        gdf = gdf[gdf["CMANAME"].astype(str).str.strip() == cma_name]
    elif da_prefix:
        gdf = gdf[gdf["DAUID"].str.startswith(da_prefix)]
    return gdf.reset_index(drop=True)


def join_attributes(boundaries: gpd.GeoDataFrame, table: pd.DataFrame) -> gpd.GeoDataFrame:
    """Attach the DA attribute table to the polygons (left join on DAUID).

    Every polygon is kept; polygons without attributes carry missing values.
    """
    tbl = table.copy()
    tbl["DAUID"] = normalize_dauid(tbl["DAUID"])
    if tbl["DAUID"].duplicated().any():
        raise ValueError("attribute table has duplicate DAUIDs")
    overlap = [c for c in tbl.columns if c != "DAUID" and c in boundaries.columns]
    if overlap:
        tbl = tbl.drop(columns=overlap)

    unmatched_polys = ~boundaries["DAUID"].isin(tbl["DAUID"])
    unmatched_rows = ~tbl["DAUID"].isin(boundaries["DAUID"])
    if unmatched_polys.any():
        log(f"[WARN] {int(unmatched_polys.sum())} polygons have no attribute row (rendered as no data)")
    if unmatched_rows.any():
        log(f"[WARN] {int(unmatched_rows.sum())} attribute rows have no polygon and are dropped")

    merged = boundaries.merge(tbl, on="DAUID", how="left")
    return gpd.GeoDataFrame(merged, geometry=boundaries.geometry.name, crs=boundaries.crs)


def main():
    ap = argparse.ArgumentParser(description="Join the DA attribute table to DA boundary polygons.")
    ap.add_argument("--data-dir", default=RAW_DIR, help="Folder with raw downloads")
    ap.add_argument("--boundaries", default=None, help="DA boundary file (default: auto)")
    ap.add_argument("--table", default=os.path.join(DATA_DIR, "data.csv"), help="Attribute table from build_da_table.py")
    ap.add_argument("--cma-name", default=CMA_NAME)
    ap.add_argument("--da-prefix", default=DA_PREFIX, help="DAUID prefix used when boundaries lack CMANAME")
    ap.add_argument("--out", default=os.path.join(DATA_DIR, "da_joined.geoparquet"))
    args = ap.parse_args()

    bnd_path = args.boundaries or resolve_by_keywords(scan_dir(args.data_dir), ["lda_000b16a", "da_boundaries"])
    if not bnd_path or not os.path.exists(bnd_path):
        log(f"[ERROR] DA boundary file not found in {args.data_dir}. Run download_statcan.py first.")
        sys.exit(1)
    if not os.path.exists(args.table):
        log(f"[ERROR] Attribute table {args.table} not found. Run build_da_table.py first.")
        sys.exit(1)

    log(f"[INFO] Boundaries: {bnd_path}")
    bnd = load_da_boundaries(bnd_path, args.cma_name, args.da_prefix)
    if bnd.empty:
        log(f"[ERROR] No DA polygons for {args.cma_name}.")
        sys.exit(1)
    log(f"[INFO] {len(bnd)} DA polygons in {args.cma_name}")

    table = pd.read_csv(args.table, dtype={"DAUID": str})
    joined = join_attributes(bnd, table)

    out_dir = os.path.dirname(args.out)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    joined.to_parquet(args.out, index=False)
    log(f"[OK] Wrote {args.out} ({len(joined)} features)")


if __name__ == "__main__":
    main()
