import argparse
import os
import sys
from typing import List, Optional, Sequence, Tuple

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import rasterio
import rasterio.mask
from matplotlib.colors import LightSource
from matplotlib.patches import Rectangle
from PIL import Image
from rasterio.transform import array_bounds

from bivariate_classes import (
    BivariatePalette,
    PALETTES,
    PaletteCoverageError,
    classify_bivariate,
    format_break_labels,
    get_palette,
    money_k,
)
from geo_io import DATA_DIR, OUT_DIR, ensure_crs, load_any, log


STATCAN_LAMBERT = 3347
BACKGROUND = "#f5f5f2"
NODATA_FILL = "#d9d9d9"
NODATA_EDGE = "#9e9e9e"
TEXT_COLOR = "#4e4d47"

Extent = Tuple[float, float, float, float]


def apply_map_theme(font_family: str = "DejaVu Sans") -> None:
    plt.rcParams.update({
        "font.family": font_family,
        "font.size": 9,
        "text.color": TEXT_COLOR,
        "axes.labelcolor": TEXT_COLOR,
        "axes.edgecolor": TEXT_COLOR,
        "xtick.color": TEXT_COLOR,
        "ytick.color": TEXT_COLOR,
        "figure.facecolor": BACKGROUND,
        "axes.facecolor": BACKGROUND,
        "savefig.facecolor": BACKGROUND,
        "legend.frameon": False,
    })


def padded_extent(gdf: gpd.GeoDataFrame, pad: float = 0.02) -> Extent:
    minx, miny, maxx, maxy = gdf.total_bounds
    dx, dy = (maxx - minx) * pad, (maxy - miny) * pad
    return (minx - dx, miny - dy, maxx + dx, maxy + dy)


def _layer_figure(extent: Extent, width: float, dpi: int):
    """Figure whose single axes fills the canvas, so layers align pixel for pixel."""
    minx, miny, maxx, maxy = extent
    height = width * (maxy - miny) / (maxx - minx)
    fig = plt.figure(figsize=(width, height), dpi=dpi)
    ax = fig.add_axes([0, 0, 1, 1])
    ax.set_xlim(minx, maxx)
    ax.set_ylim(miny, maxy)
    ax.set_axis_off()
    return fig, ax


def _save_layer(fig, out_png: str, dpi: int) -> str:
    out_dir = os.path.dirname(out_png)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    fig.savefig(out_png, dpi=dpi, transparent=True)
    plt.close(fig)
    log(f"[OK] Wrote {out_png}")
    return out_png


def plot_univariate(gdf: gpd.GeoDataFrame, column: str, title: str, out_png: str, k: int = 5, cmap: str = "OrRd", fmt: str = "{:,.0f}") -> Optional[str]:
    vals = pd.to_numeric(gdf[column], errors="coerce")
    if vals.notna().sum() == 0:
        log(f"[WARN] {column} has no values; skipping univariate map.")
        return None
    g = gdf.copy()
    g[column] = vals
    fig, ax = plt.subplots(figsize=(8.5, 11))
    g.plot(
        ax=ax, column=column, cmap=cmap, scheme="Quantiles", k=k,
        edgecolor="white", linewidth=0.1, legend=True,
        legend_kwds={"loc": "lower left", "title": column, "fmt": fmt},
        missing_kwds={"color": NODATA_FILL, "label": "No data"},
    )
    ax.set_title(title, fontsize=14)
    ax.set_axis_off()
    plt.tight_layout()
    out_dir = os.path.dirname(out_png)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    fig.savefig(out_png, dpi=200)
    plt.close(fig)
    log(f"[OK] Wrote {out_png}")
    return out_png


def dem_crs(dem_path: str):
    with rasterio.open(dem_path) as src:
        return src.crs


def render_hillshade(
    dem_path: str,
    outline: gpd.GeoDataFrame,
    out_png: str,
    extent: Extent,
    width: float = 10.0,
    dpi: int = 200,
    azdeg: float = 315.0,
    altdeg: float = 45.0,
    vert_exag: float = 2.0,
    alpha: float = 0.9,
) -> str:
    """Hillshade of a DEM clipped to the outline polygons, drawn as a greyscale layer.

    The outline must be in, or reprojectable to, the DEM's CRS; `extent` is
    in the DEM's CRS too. Cells outside the outline are transparent.
    """
    with rasterio.open(dem_path) as src:
        shapes = list(outline.to_crs(src.crs).geometry)
        data, transform = rasterio.mask.mask(src, shapes, crop=True, filled=False)
    elev = np.ma.masked_invalid(data[0].astype(float))
    if elev.count() == 0:
        raise ValueError(f"{dem_path} has no cells inside the outline")
    filled = elev.filled(float(elev.min()))

    ls = LightSource(azdeg=azdeg, altdeg=altdeg)
    shade = ls.hillshade(filled, vert_exag=vert_exag, dx=abs(transform.a), dy=abs(transform.e))
    shade = np.ma.masked_array(shade, mask=np.ma.getmaskarray(elev))

    h, w = shade.shape
    west, south, east, north = array_bounds(h, w, transform)
    fig, ax = _layer_figure(extent, width, dpi)
    ax.imshow(shade, cmap="Greys_r", extent=(west, east, south, north), origin="upper", alpha=alpha, interpolation="bilinear", aspect="auto")
    ax.set_xlim(extent[0], extent[2])
    ax.set_ylim(extent[1], extent[3])
    return _save_layer(fig, out_png, dpi)


def draw_annotations(ax, annotations: pd.DataFrame, crs) -> int:
    """One curved leader line and label per row (lon, lat, label_lon, label_lat, text[, curvature])."""
    if annotations is None or annotations.empty:
        return 0
    pts = gpd.GeoSeries(gpd.points_from_xy(annotations["lon"], annotations["lat"]), crs=4326).to_crs(crs)
    lbl = gpd.GeoSeries(gpd.points_from_xy(annotations["label_lon"], annotations["label_lat"]), crs=4326).to_crs(crs)
    curv = annotations["curvature"] if "curvature" in annotations.columns else pd.Series(0.3, index=annotations.index)
    for text, p, q, rad in zip(annotations["text"], pts, lbl, curv.fillna(0.3)):
        ax.annotate(
            str(text), xy=(p.x, p.y), xytext=(q.x, q.y),
            fontsize=8, ha="center", va="center", color=TEXT_COLOR,
            arrowprops=dict(arrowstyle="-", connectionstyle=f"arc3,rad={float(rad)}", color=TEXT_COLOR, lw=0.6),
        )
    return len(annotations)


def load_annotations(path: Optional[str]) -> Optional[pd.DataFrame]:
    if not path:
        return None
    if not os.path.exists(path):
        log(f"[WARN] Annotations file {path} not found; skipping.")
        return None
    df = pd.read_csv(path)
    need = {"lon", "lat", "label_lon", "label_lat", "text"}
    if not need.issubset(df.columns):
        log(f"[WARN] Annotations need columns {sorted(need)}; skipping.")
        return None
    return df


def plot_bivariate_layer(
    gdf: gpd.GeoDataFrame,
    out_png: str,
    extent: Extent,
    width: float = 10.0,
    dpi: int = 200,
    title: Optional[str] = None,
    annotations: Optional[pd.DataFrame] = None,
    color_col: str = "bi_color",
) -> str:
    """Fill each DA with its resolved colour; DAs without a colour get an outline only."""
    fig, ax = _layer_figure(extent, width, dpi)
    has = gdf[color_col].notna()
    if (~has).any():
        gdf[~has].plot(ax=ax, facecolor="none", edgecolor=NODATA_EDGE, linewidth=0.15, aspect=None)
    if has.any():
        gdf[has].plot(ax=ax, color=gdf.loc[has, color_col].tolist(), edgecolor="white", linewidth=0.1, aspect=None)
    n = draw_annotations(ax, annotations, gdf.crs) if annotations is not None else 0
    if n:
        log(f"[INFO] Drew {n} annotations")
    if title:
        ax.text(0.02, 0.98, title, transform=ax.transAxes, fontsize=16, fontweight="bold", va="top", ha="left")
    ax.set_xlim(extent[0], extent[2])
    ax.set_ylim(extent[1], extent[3])
    return _save_layer(fig, out_png, dpi)


def render_legend(
    palette: BivariatePalette,
    out_png: str,
    label_a: str,
    label_b: str,
    labels_a: Optional[Sequence[str]] = None,
    labels_b: Optional[Sequence[str]] = None,
    size: float = 2.4,
    dpi: int = 200,
) -> str:
    """N x N legend grid: class_a grows to the right, class_b grows upward."""
    n = palette.n
    fig, ax = plt.subplots(figsize=(size, size), dpi=dpi)
    for a, b in palette.keys():
        ax.add_patch(Rectangle((a - 1, b - 1), 1, 1, facecolor=palette.color(a, b), edgecolor="white", lw=0.5))
    ax.set_xlim(0, n)
    ax.set_ylim(0, n)
    ax.set_aspect("equal")
    ticks = [i + 0.5 for i in range(n)]
    ax.set_xticks(ticks)
    ax.set_yticks(ticks)
    ax.set_xticklabels(list(labels_a) if labels_a else [""] * n, fontsize=5, rotation=30, ha="right")
    ax.set_yticklabels(list(labels_b) if labels_b else [""] * n, fontsize=5)
    ax.set_xlabel(f"{label_a} $\\rightarrow$", fontsize=7, fontweight="bold")
    ax.set_ylabel(f"{label_b} $\\rightarrow$", fontsize=7, fontweight="bold")
    for spine in ax.spines.values():
        spine.set_visible(False)
    ax.tick_params(length=0)
    fig.tight_layout()
    out_dir = os.path.dirname(out_png)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    fig.savefig(out_png, dpi=dpi, transparent=True)
    plt.close(fig)
    log(f"[OK] Wrote {out_png}")
    return out_png


def composite_layers(
    layers: Sequence[str],
    out_png: str,
    legend_png: Optional[str] = None,
    legend_xy: Tuple[float, float] = (0.03, 0.05),
    background: str = BACKGROUND,
    legend_max_frac: float = 0.35,
) -> str:
    """Stack transparent PNG layers bottom-up on a background and place the legend.

    `legend_xy` is the legend's lower-left corner as a fraction of the canvas,
    measured from the bottom-left.
    """
    if not layers:
        raise ValueError("need at least one layer to composite")
    canvas = None
    for path in layers:
        with Image.open(path) as im:
            img = im.convert("RGBA")
        if canvas is None:
            canvas = Image.new("RGBA", img.size, background)
        if img.size != canvas.size:
            img = img.resize(canvas.size, Image.LANCZOS)
        canvas = Image.alpha_composite(canvas, img)

    if legend_png:
        with Image.open(legend_png) as im:
            leg = im.convert("RGBA")
        leg.thumbnail((int(canvas.width * legend_max_frac), int(canvas.height * legend_max_frac)))
        x = max(0, int(legend_xy[0] * canvas.width))
        y = max(0, canvas.height - leg.height - int(legend_xy[1] * canvas.height))
        canvas.alpha_composite(leg, dest=(x, y))

    out_dir = os.path.dirname(out_png)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    canvas.convert("RGB").save(out_png)
    log(f"[OK] Wrote composite -> {out_png}")
    return out_png


def main(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(description="Render univariate and bivariate DA choropleths with relief and legend.")
    ap.add_argument("--input", default=os.path.join(DATA_DIR, "da_joined.geoparquet"), help="Joined DA layer from join_da_boundaries.py")
    ap.add_argument("--col-a", default="prox_idx_parks", help="First variable (legend x axis)")
    ap.add_argument("--col-b", default="income", help="Second variable (legend y axis)")
    ap.add_argument("--label-a", default="Higher proximity to parks")
    ap.add_argument("--label-b", default="Higher income")
    ap.add_argument("--palette", default="DkBlue", choices=sorted(PALETTES))
    ap.add_argument("--classes", type=int, default=None, help="Quantile classes per variable (default: palette size)")
    ap.add_argument("--dem", default=None, help="DEM GeoTIFF for the hillshade relief layer")
    ap.add_argument("--annotations", default=None, help="CSV with lon, lat, label_lon, label_lat, text[, curvature]")
    ap.add_argument("--title", default="Income and proximity to parks in Metro Vancouver")
    ap.add_argument("--out-dir", default=os.path.join(OUT_DIR, "static"))
    ap.add_argument("--width", type=float, default=10.0, help="Map width in inches")
    ap.add_argument("--dpi", type=int, default=200)
    args = ap.parse_args(argv)

    gdf = load_any(args.input)
    if gdf is None or gdf.empty:
        log(f"[ERROR] {args.input} missing or empty. Run join_da_boundaries.py first.")
        sys.exit(1)
    for c in (args.col_a, args.col_b):
        if c not in gdf.columns:
            log(f"[ERROR] Column {c!r} not in {args.input}.")
            sys.exit(1)

    dem = args.dem if args.dem and os.path.exists(args.dem) else None
    if args.dem and dem is None:
        log(f"[WARN] DEM {args.dem} not found; relief layer skipped.")
    gdf = gdf.to_crs(dem_crs(dem)) if dem else ensure_crs(gdf, STATCAN_LAMBERT)

    palette = get_palette(args.palette)
    try:
        result = classify_bivariate(gdf, args.col_a, args.col_b, palette, n=args.classes)
    except (PaletteCoverageError, ValueError) as e:
        log(f"[ERROR] {e}")
        sys.exit(1)
    classified = result.frame
    for col, brk in ((args.col_a, result.breaks_a), (args.col_b, result.breaks_b)):
        if len(brk) == 0:
            log(f"[WARN] {col} has no valid values; every DA is drawn as no data.")
    nodata = int(classified["bi_color"].isna().sum())
    log(f"[INFO] {len(classified)} DAs classified; {nodata} without data")
    log(f"[INFO] {args.col_a} breaks: {np.round(result.breaks_a, 4).tolist()}")
    log(f"[INFO] {args.col_b} breaks: {np.round(result.breaks_b, 2).tolist()}")

    apply_map_theme()
    os.makedirs(args.out_dir, exist_ok=True)
    class_cols = ["DAUID", f"{args.col_a}_class", f"{args.col_b}_class", "bi_class", "bi_color"]
    out_csv = os.path.join(args.out_dir, "da_bivariate_classes.csv")
    pd.DataFrame(classified[[c for c in class_cols if c in classified.columns]]).to_csv(out_csv, index=False)
    log(f"[OK] Wrote {out_csv}")

    plot_univariate(classified, args.col_b, args.label_b.replace("Higher ", "").capitalize(), os.path.join(args.out_dir, f"univariate_{args.col_b}.png"), fmt="${:,.0f}")
    plot_univariate(classified, args.col_a, args.label_a.replace("Higher ", "").capitalize(), os.path.join(args.out_dir, f"univariate_{args.col_a}.png"), cmap="BuGn", fmt="{:.3f}")

    extent = padded_extent(classified)
    layers = []
    if dem:
        try:
            layers.append(render_hillshade(dem, classified, os.path.join(args.out_dir, "layer_relief.png"), extent, args.width, args.dpi))
        except ValueError as e:
            log(f"[WARN] Relief layer skipped: {e}")
    annotations = load_annotations(args.annotations)
    layers.append(plot_bivariate_layer(classified, os.path.join(args.out_dir, "layer_bivariate.png"), extent, args.width, args.dpi, title=args.title, annotations=annotations))

    legend_png = render_legend(
        palette,
        os.path.join(args.out_dir, "legend.png"),
        args.label_a,
        args.label_b,
        labels_a=format_break_labels(result.breaks_a, "{:.3f}"),
        labels_b=format_break_labels(result.breaks_b, money_k),
        dpi=args.dpi,
    )
    composite_layers(layers, os.path.join(args.out_dir, "bivariate_map.png"), legend_png=legend_png)


if __name__ == "__main__":
    main()
