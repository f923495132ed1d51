import argparse
import html
import os
import sys
from typing import List, Optional, Sequence

import folium
import geopandas as gpd
import numpy as np
import pandas as pd
from branca.colormap import LinearColormap

from bivariate_classes import (
    BivariatePalette,
    PALETTES,
    PaletteCoverageError,
    classify_bivariate,
    format_break_labels,
    get_palette,
    money_k,
)
from geo_io import DATA_DIR, OUT_DIR, center_from_bounds, ensure_wgs84, load_any, log


NODATA_FILL = "#bdbdbd"


def _make_colormap(series: pd.Series, colors: Sequence[str] = ("#fee8c8", "#fdbb84", "#e34a33")) -> LinearColormap:
    s = pd.to_numeric(series, errors="coerce")
    vmin, vmax = float(s.quantile(0.05)), float(s.quantile(0.95))
    if not np.isfinite(vmin) or not np.isfinite(vmax) or vmin == vmax:
        vmin, vmax = float(s.min()), float(s.max())
    if not np.isfinite(vmin) or not np.isfinite(vmax):
        vmin, vmax = 0.0, 1.0
    if vmin == vmax:
        vmax = vmin + 1
    return LinearColormap(list(colors), vmin=vmin, vmax=vmax)


def _tooltip_frame(gdf: gpd.GeoDataFrame, cols: List[str]) -> gpd.GeoDataFrame:
    # GeoJSON export cannot carry pandas NA scalars
    g = ensure_wgs84(gdf).dropna(subset=["geometry"])  # type: ignore[arg-type]
    keep = [c for c in cols if c in g.columns] + ["geometry"]
    g = g[keep].copy()
    for c in keep:
        if c != "geometry":
            g[c] = g[c].astype(object).where(g[c].notna(), None)
    return g


def map_polygons(gdf: gpd.GeoDataFrame, out_html: str, color_by: str, name_field: Optional[str] = "DAUID", colors: Sequence[str] = ("#fee8c8", "#fdbb84", "#e34a33")) -> Optional[str]:
    if color_by not in gdf.columns:
        log(f"[WARN] {color_by} not in layer; skipping {out_html}.")
        return None
    g = _tooltip_frame(gdf, [c for c in [name_field, color_by] if c])
    if len(g) == 0:
        log("[WARN] Polygon layer empty; skipping map.")
        return None

    lat, lon = center_from_bounds(g)
    m = folium.Map(location=[lat, lon], zoom_start=10, tiles="CartoDB positron")
    cmap = _make_colormap(g[color_by], colors)

    def style_fn(feat):
        val = feat["properties"].get(color_by)
        try:
            vnum = float(val) if val is not None else None
        except (TypeError, ValueError):
            vnum = None
        col = NODATA_FILL if vnum is None or np.isnan(vnum) else cmap(vnum)
        return {"fillColor": col, "color": "#666666", "weight": 0.3, "fillOpacity": 0.75}

    fields = [c for c in [name_field, color_by] if c and c in g.columns]
    folium.GeoJson(
        g.to_json(default=str),
        name=color_by,
        style_function=style_fn,
        tooltip=folium.features.GeoJsonTooltip(fields=fields, aliases=[f.replace("_", " ").title() for f in fields], localize=True),
    ).add_to(m)
    cmap.caption = color_by
    cmap.add_to(m)

    os.makedirs(os.path.dirname(out_html) or ".", exist_ok=True)
    m.save(out_html)
    log(f"[OK] Wrote map -> {out_html}")
    return out_html


def legend_grid_html(palette: BivariatePalette, label_a: str, label_b: str, labels_a: Optional[Sequence[str]] = None, labels_b: Optional[Sequence[str]] = None) -> str:
    """Fixed-position HTML legend: class_a grows to the right, class_b grows upward."""
    n = palette.n
    rows = []
    for b in range(n, 0, -1):
        tip_b = html.escape(labels_b[b - 1]) if labels_b else ""
        cells = "".join(
            f'<td title="{html.escape(labels_a[a - 1]) if labels_a else ""} / {tip_b}" '
            f'style="width:18px;height:18px;background:{palette.color(a, b)};"></td>'
            for a in range(1, n + 1)
        )
        rows.append(f"<tr>{cells}</tr>")
    no_data = (
        f'<div style="margin-top:6px;"><span style="display:inline-block;width:12px;height:12px;'
        f'background:{NODATA_FILL};margin-right:6px;border:1px solid #999;"></span>No data</div>'
    )
    return (
        '<div style="position: fixed; bottom: 20px; left: 20px; z-index: 9999; background: white; '
        'padding: 8px 10px; border: 1px solid #bbb; font-size: 11px;">'
        f'<div style="font-weight:bold;">&uarr; {html.escape(label_b)}</div>'
        f'<table style="border-collapse:separate;border-spacing:1px;">{"".join(rows)}</table>'
        f'<div style="font-weight:bold;">{html.escape(label_a)} &rarr;</div>'
        f"{no_data}</div>"
    )


def map_bivariate_polygons(
    gdf: gpd.GeoDataFrame,
    out_html: str,
    palette: BivariatePalette,
    col_a: str,
    col_b: str,
    label_a: str,
    label_b: str,
    labels_a: Optional[Sequence[str]] = None,
    labels_b: Optional[Sequence[str]] = None,
    name_field: Optional[str] = "DAUID",
    color_col: str = "bi_color",
) -> Optional[str]:
    """Bivariate map from an already-classified layer (needs `color_col`)."""
    if color_col not in gdf.columns:
        raise ValueError(f"layer has no {color_col!r}; classify it first")
    cols = [c for c in [name_field, col_a, col_b, "bi_class", color_col] if c]
    g = _tooltip_frame(gdf, cols)
    if len(g) == 0:
        log("[WARN] Bivariate map skipped: empty layer.")
        return None

    lat, lon = center_from_bounds(g)
    m = folium.Map(location=[lat, lon], zoom_start=10, tiles="CartoDB positron")

    def style_fn(feat):
        fill = feat["properties"].get(color_col) or NODATA_FILL
        return {"fillColor": fill, "color": "#ffffff", "weight": 0.3, "fillOpacity": 0.85}

    fields = [c for c in [name_field, col_a, col_b, "bi_class"] if c and c in g.columns]
    folium.GeoJson(
        g.to_json(default=str),
        name=os.path.basename(out_html),
        style_function=style_fn,
        tooltip=folium.features.GeoJsonTooltip(fields=fields, aliases=[f.replace("_", " ").title() for f in fields], localize=True),
    ).add_to(m)
    m.get_root().html.add_child(folium.Element(legend_grid_html(palette, label_a, label_b, labels_a, labels_b)))

    os.makedirs(os.path.dirname(out_html) or ".", exist_ok=True)
    m.save(out_html)
    log(f"[OK] Wrote map -> {out_html}")
    return out_html


def write_index(out_dir: str) -> Optional[str]:
    items = sorted(fn for fn in os.listdir(out_dir) if fn.endswith(".html") and fn != "index.html")
    if not items:
        return None
    index_path = os.path.join(out_dir, "index.html")
    with open(index_path, "w", encoding="utf-8") as f:
        f.write("<h2>Interactive Maps</h2>\n<ul>\n")
        for fn in items:
            f.write(f"  <li><a href='{fn}' target='_blank'>{fn}</a></li>\n")
        f.write("</ul>\n")
    log(f"[OK] Wrote index -> {index_path}")
    return index_path


def main(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(description="Generate interactive HTML maps of the classified DAs.")
    ap.add_argument("--input", default=os.path.join(DATA_DIR, "da_joined.geoparquet"))
    ap.add_argument("--col-a", default="prox_idx_parks")
    ap.add_argument("--col-b", default="income")
    ap.add_argument("--label-a", default="Higher proximity to parks")
    ap.add_argument("--label-b", default="Higher income")
    ap.add_argument("--palette", default="DkBlue", choices=sorted(PALETTES))
    ap.add_argument("--classes", type=int, default=None)
    ap.add_argument("--out-dir", default=os.path.join(OUT_DIR, "interactive"))
    args = ap.parse_args(argv)

    gdf = load_any(args.input)
    if gdf is None or gdf.empty:
        log(f"[ERROR] {args.input} missing or empty. Run join_da_boundaries.py first.")
        sys.exit(1)

    palette = get_palette(args.palette)
    try:
        result = classify_bivariate(gdf, args.col_a, args.col_b, palette, n=args.classes)
    except (PaletteCoverageError, ValueError) as e:
        log(f"[ERROR] {e}")
        sys.exit(1)
    for col, brk in ((args.col_a, result.breaks_a), (args.col_b, result.breaks_b)):
        if len(brk) == 0:
            log(f"[WARN] {col} has no valid values; every DA is drawn as no data.")

    os.makedirs(args.out_dir, exist_ok=True)
    map_polygons(gdf, os.path.join(args.out_dir, f"da_{args.col_b}.html"), color_by=args.col_b)
    map_polygons(gdf, os.path.join(args.out_dir, f"da_{args.col_a}.html"), color_by=args.col_a, colors=("#edf8fb", "#66c2a4", "#006d2c"))
    map_bivariate_polygons(
        result.frame,
        os.path.join(args.out_dir, f"da_bivariate_{args.col_a}_{args.col_b}.html"),
        palette,
        args.col_a,
        args.col_b,
        args.label_a,
        args.label_b,
        labels_a=format_break_labels(result.breaks_a, "{:.3f}"),
        labels_b=format_break_labels(result.breaks_b, money_k),
    )
    write_index(args.out_dir)


if __name__ == "__main__":
    main()
