import argparse
import os
import sys
from typing import Optional

import pandas as pd

from geo_io import DATA_DIR, RAW_DIR, log, resolve_by_keywords, scan_dir


INCOME_VAR = "Median after-tax income of households in 2015 ($)"
DIM_COL = "DIM: Profile of Dissemination Areas (2247)"
GEO_CODE_COL = "GEO_CODE (POR)"
VALUE_COL = "Dim: Sex (3): Member ID: [1]: Total - Sex"
GEO_CODE_PREFIX = "5915"  # Greater Vancouver census division
DA_CODE_LEN = 8
CMA_NAME = "Vancouver"
PMD_MEASURE = "prox_idx_parks"

SUPPRESSED = ["x", "X", "F", "..", "...", ""]
AGG_CHOICES = ["max", "min", "mean", "median", "first"]


def load_census_income(
    path: str,
    variable: str = INCOME_VAR,
    geo_code_prefix: str = GEO_CODE_PREFIX,
    value_col: Optional[str] = None,
) -> pd.DataFrame:
    """Read the DA-level Census Profile CSV and keep one variable for the DAs of one region.

    GEO_CODE is kept as a string identifier so it joins to DAUID in the
    proximity and boundary files. Suppressed cells become missing.
    """
    df = pd.read_csv(path, dtype={GEO_CODE_COL: str}, na_values=SUPPRESSED, keep_default_na=True, low_memory=False, encoding="latin-1")
    for c in (GEO_CODE_COL, DIM_COL):
        if c not in df.columns:
            raise ValueError(f"census profile is missing column {c!r}")
    if value_col is None:
        value_col = VALUE_COL if VALUE_COL in df.columns else df.columns[-1]

    codes = df[GEO_CODE_COL].astype(str).str.strip().str.replace(r"\.0$", "", regex=True)
    # Division (4-digit) and subdivision (7-digit) rows share the prefix; DAs have 8 digits
    in_region = codes.str.startswith(str(geo_code_prefix)) & (codes.str.len() == DA_CODE_LEN)
    mask = (df[DIM_COL].astype(str).str.strip() == variable) & in_region
    out = pd.DataFrame({
        "DAUID": codes[mask].values,
        "GEO_NAME": df.loc[mask, "GEO_NAME"].astype(str).values if "GEO_NAME" in df.columns else codes[mask].values,
        "income": pd.to_numeric(df.loc[mask, value_col], errors="coerce").values,
    })
    return out


def collapse_duplicate_income(df: pd.DataFrame, agg: str = "max") -> pd.DataFrame:
    if agg not in AGG_CHOICES:
        raise ValueError(f"unsupported aggregation {agg!r}; choose from {AGG_CHOICES}")
    if df.empty:
        return df.copy()
    return df.groupby("DAUID", as_index=False, sort=True).agg(GEO_NAME=("GEO_NAME", "first"), income=("income", agg))


def load_proximity(path: str, cma_name: str = CMA_NAME, measure: str = PMD_MEASURE) -> pd.DataFrame:
    df = pd.read_csv(path, dtype={"DBUID": str, "DAUID": str}, na_values=SUPPRESSED, low_memory=False, encoding="latin-1")
    for c in ("DAUID", "CMANAME", measure):
        if c not in df.columns:
            raise ValueError(f"proximity measures file is missing column {c!r}")
    df = df[df["CMANAME"].astype(str).str.strip() == cma_name].copy()
    df["DAUID"] = df["DAUID"].astype(str).str.strip().str.replace(r"\.0$", "", regex=True)
    df[measure] = pd.to_numeric(df[measure], errors="coerce")
    keep = [c for c in ("DBUID", "DAUID", "CMANAME", measure) if c in df.columns]
    return df[keep].reset_index(drop=True)


def aggregate_proximity_to_da(df: pd.DataFrame, measure: str = PMD_MEASURE, agg: str = "median") -> pd.DataFrame:
    # Blocks with a missing measure are skipped; an all-missing DA stays missing
    grp = df.groupby("DAUID", sort=True)[measure]
    out = grp.agg(agg).to_frame(measure)
    out["n_blocks"] = grp.size()
    return out.reset_index()


def build_da_table(income: pd.DataFrame, proximity: pd.DataFrame) -> pd.DataFrame:
    # Left join keeps every DA with an income row; no filling of missing measures
    return income.merge(proximity, on="DAUID", how="left", validate="one_to_one")


def main():
    ap = argparse.ArgumentParser(description="Join census income and proximity measures into one DA attribute table.")
    ap.add_argument("--data-dir", default=RAW_DIR, help="Folder with raw Statistics Canada downloads")
    ap.add_argument("--census-csv", default=None, help="Census Profile DA CSV (default: auto)")
    ap.add_argument("--pmd-csv", default=None, help="Proximity Measures CSV (default: auto)")
    ap.add_argument("--out-csv", default=os.path.join(DATA_DIR, "data.csv"))
    ap.add_argument("--variable", default=INCOME_VAR, help="Census profile characteristic to keep")
    ap.add_argument("--geo-code-prefix", default=GEO_CODE_PREFIX, help="GEO_CODE prefix selecting the region")
    ap.add_argument("--cma-name", default=CMA_NAME)
    ap.add_argument("--measure", default=PMD_MEASURE, help="Proximity measure column")
    ap.add_argument("--income-agg", default="max", choices=AGG_CHOICES, help="How to collapse duplicate income rows per DA")
    ap.add_argument("--pmd-agg", default="median", choices=AGG_CHOICES, help="How to aggregate blocks to DAs")
    args = ap.parse_args()

    layers = scan_dir(args.data_dir)
    census_path = args.census_csv or resolve_by_keywords(layers, ["english_csv_data", "census_profile"])
    pmd_path = args.pmd_csv or resolve_by_keywords(layers, ["pmd-en"])
    if not census_path or not os.path.exists(census_path):
        log(f"[ERROR] Census profile CSV not found in {args.data_dir}. Run download_statcan.py first.")
        sys.exit(1)
    if not pmd_path or not os.path.exists(pmd_path):
        log(f"[ERROR] Proximity measures CSV not found in {args.data_dir}. Run download_statcan.py first.")
        sys.exit(1)

    log(f"[INFO] Census: {census_path}")
    income = load_census_income(census_path, args.variable, args.geo_code_prefix)
    if income.empty:
        log(f"[ERROR] No rows for {args.variable!r} with GEO_CODE prefix {args.geo_code_prefix}.")
        sys.exit(1)
    n_raw = len(income)
    income = collapse_duplicate_income(income, args.income_agg)
    log(f"[INFO] Income rows: {n_raw} -> {len(income)} DAs ({n_raw - len(income)} duplicates collapsed by {args.income_agg})")

    log(f"[INFO] Proximity measures: {pmd_path}")
    pmd = load_proximity(pmd_path, args.cma_name, args.measure)
    log(f"[INFO] {len(pmd)} dissemination blocks in {args.cma_name}")
    prox = aggregate_proximity_to_da(pmd, args.measure, args.pmd_agg)

    table = build_da_table(income, prox)
    log(f"[INFO] Missing income: {int(table['income'].isna().sum())} | missing {args.measure}: {int(table[args.measure].isna().sum())}")

    out_dir = os.path.dirname(args.out_csv)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    table.to_csv(args.out_csv, index=False)
    log(f"[OK] Wrote {args.out_csv} ({len(table)} DAs)")


if __name__ == "__main__":
    main()
