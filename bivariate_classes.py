"""Quantile classes and bivariate colour lookup for DA choropleths.

Two numeric attributes are each cut into N quantile classes, the pair of
class indices forms the composite key, and the key is looked up in a fixed
N x N colour table. Class indices are 1-based; missing values stay missing.
"""
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd


ClassKey = Tuple[int, int]


class PaletteCoverageError(KeyError):
    """A composite key has no colour: the binning and the palette disagree on the class count."""


def _as_numeric(values) -> pd.Series:
    s = values if isinstance(values, pd.Series) else pd.Series(list(values), dtype=object)
    s = pd.to_numeric(s, errors="coerce")
    return s.replace([np.inf, -np.inf], np.nan).astype(float)


# ---------------------------------------------------------------------------
# Quantile binner
# ---------------------------------------------------------------------------

class QuantileBins(NamedTuple):
    breaks: np.ndarray
    classes: pd.Series


def quantile_breaks(values, n: int = 3) -> np.ndarray:
    """Return the n+1 quantile breakpoints of the non-missing values.

    Quantiles are taken at 0, 1/n, ..., 1 with linear interpolation between
    order statistics, so breaks[0] is the minimum and breaks[n] the maximum.
    """
    if n < 2:
        raise ValueError(f"class count must be >= 2, got {n}")
    s = _as_numeric(values).dropna()
    if s.empty:
        raise ValueError("no valid values to compute quantile breaks from")
    arr = s.to_numpy(dtype=float)
    breaks = np.quantile(arr, np.linspace(0.0, 1.0, n + 1))
    # Interpolation noise must not make the sequence decrease
    breaks = np.maximum.accumulate(breaks)
    breaks[0] = arr.min()
    breaks[-1] = arr.max()
    return breaks


def assign_classes(values, breaks: Sequence[float]) -> pd.Series:
    """Map each value to the smallest class i with value <= breaks[i].

    Boundary values fall into the lower class, the minimum lands in class 1
    and the maximum in the last class. Tied breakpoints collapse classes
    instead of failing. Missing values come back as <NA>.
    """
    breaks = np.asarray(breaks, dtype=float)
    n = len(breaks) - 1
    if n < 1:
        raise ValueError("need at least two breakpoints")
    if np.any(np.diff(breaks) < 0):
        raise ValueError(f"breakpoints must be non-decreasing: {breaks.tolist()}")
    s = _as_numeric(values)
    valid = s.notna()
    idx = np.searchsorted(breaks[1:], s[valid].to_numpy(dtype=float), side="left") + 1
    idx = np.clip(idx, 1, n)
    out = pd.Series(pd.NA, index=s.index, dtype="Int64")
    out.loc[valid] = idx
    return out


def quantile_bin(values, n: int = 3) -> QuantileBins:
    breaks = quantile_breaks(values, n)
    return QuantileBins(breaks=breaks, classes=assign_classes(values, breaks))


def money_k(value: float) -> str:
    if abs(value) >= 1000:
        return f"${value / 1000:,.0f}k"
    return f"${value:,.0f}"


def format_break_labels(breaks: Sequence[float], fmt: Union[str, Callable[[float], str]] = "{:,.2f}") -> List[str]:
    """One 'low–high' label per class, e.g. ['$20k–$45k', '$45k–$62k', ...]."""
    if isinstance(fmt, str):
        fmt_fn = fmt.format
    else:
        fmt_fn = fmt
    return [f"{fmt_fn(lo)}–{fmt_fn(hi)}" for lo, hi in zip(breaks[:-1], breaks[1:])]


# ---------------------------------------------------------------------------
# Bivariate palette
# ---------------------------------------------------------------------------

class BivariatePalette:
    """Fixed N x N colour table keyed by (class_a, class_b).

    The table must enumerate every pair in [1, N] x [1, N] and nothing else.
    """

    def __init__(self, name: str, colors: Mapping[ClassKey, str]):
        keys = set(colors)
        n = int(round(len(keys) ** 0.5))
        expected = {(a, b) for a in range(1, n + 1) for b in range(1, n + 1)}
        if n < 2 or keys != expected:
            missing = sorted(expected - keys)
            extra = sorted(keys - expected, key=str)
            raise ValueError(f"palette {name!r} is not a full square grid (missing={missing}, unexpected={extra})")
        self._name = name
        self._n = n
        self._colors = MappingProxyType(dict(colors))

    @property
    def name(self) -> str:
        return self._name

    @property
    def n(self) -> int:
        return self._n

    def color(self, class_a: int, class_b: int) -> str:
        try:
            return self._colors[(class_a, class_b)]
        except KeyError:
            raise PaletteCoverageError(
                f"key ({class_a}, {class_b}) is outside the {self._n}x{self._n} palette {self._name!r}"
            ) from None

    def __getitem__(self, key: ClassKey) -> str:
        return self.color(*key)

    def __contains__(self, key) -> bool:
        return key in self._colors

    def __len__(self) -> int:
        return len(self._colors)

    def keys(self) -> List[ClassKey]:
        return sorted(self._colors)

    def grid(self) -> List[List[str]]:
        """Rows indexed by class_b - 1, columns by class_a - 1."""
        return [[self._colors[(a, b)] for a in range(1, self._n + 1)] for b in range(1, self._n + 1)]

    def __repr__(self) -> str:
        return f"BivariatePalette({self._name!r}, n={self._n})"


PALETTES: Dict[str, BivariatePalette] = {
    "DkBlue": BivariatePalette("DkBlue", {
        (1, 1): "#e8e8e8", (2, 1): "#b5c0da", (3, 1): "#6c83b5",
        (1, 2): "#b8d6be", (2, 2): "#90b2b3", (3, 2): "#567994",
        (1, 3): "#73ae80", (2, 3): "#5a9178", (3, 3): "#2a5a5b",
    }),
    "GrPink": BivariatePalette("GrPink", {
        (1, 1): "#e8e8e8", (2, 1): "#e4acac", (3, 1): "#c85a5a",
        (1, 2): "#b0d5df", (2, 2): "#ad9ea5", (3, 2): "#985356",
        (1, 3): "#64acbe", (2, 3): "#627f8c", (3, 3): "#574249",
    }),
    "TealPurple": BivariatePalette("TealPurple", {
        (1, 1): "#e8e8e8", (2, 1): "#ace4e4", (3, 1): "#5ac8c8",
        (1, 2): "#dfb0d6", (2, 2): "#a5add3", (3, 2): "#5698b9",
        (1, 3): "#be64ac", (2, 3): "#8c62aa", (3, 3): "#3b4994",
    }),
    "GrPink4": BivariatePalette("GrPink4", {
        (1, 1): "#e8e8e8", (2, 1): "#e4c1c1", (3, 1): "#dc9393", (4, 1): "#c85a5a",
        (1, 2): "#cbdfe6", (2, 2): "#c7b9c0", (3, 2): "#bf8e95", (4, 2): "#ad5a5e",
        (1, 3): "#a3cbd9", (2, 3): "#a0a6b3", (3, 3): "#9a7f8a", (4, 3): "#8d5559",
        (1, 4): "#64acbe", (2, 4): "#62899a", (3, 4): "#5e6778", (4, 4): "#574249",
    }),
}


def get_palette(name: str) -> BivariatePalette:
    try:
        return PALETTES[name]
    except KeyError:
        raise ValueError(f"unknown palette {name!r}; choose from {sorted(PALETTES)}") from None


def palette_legend_frame(palette: BivariatePalette) -> pd.DataFrame:
    rows = [{"class_a": a, "class_b": b, "color": palette.color(a, b)} for a, b in palette.keys()]
    return pd.DataFrame(rows)


# ---------------------------------------------------------------------------
# Classifier / joiner
# ---------------------------------------------------------------------------

class BivariateResult(NamedTuple):
    frame: pd.DataFrame
    breaks_a: np.ndarray
    breaks_b: np.ndarray


def composite_key(class_a, class_b) -> Optional[ClassKey]:
    if pd.isna(class_a) or pd.isna(class_b):
        return None
    return (int(class_a), int(class_b))


def _bin_column(values, n: int) -> QuantileBins:
    # A column with no valid values leaves every record unclassified
    s = _as_numeric(values)
    if s.notna().sum() == 0:
        return QuantileBins(breaks=np.array([], dtype=float), classes=pd.Series(pd.NA, index=s.index, dtype="Int64"))
    return quantile_bin(s, n)


def classify_bivariate(
    df: pd.DataFrame,
    col_a: str,
    col_b: str,
    palette: BivariatePalette,
    n: Optional[int] = None,
) -> BivariateResult:
    """Classify two columns into quantile classes and resolve bivariate colours.

    Breaks for each column are computed once over its valid records. The
    returned copy gains `<col_a>_class`, `<col_b>_class`, `bi_class` ("a-b")
    and `bi_color`; records missing either value get no class key and a None
    colour. A column with no valid values gets empty breaks and leaves
    every record as no data. A class count that does not match the palette
    raises PaletteCoverageError before any colour is resolved.
    """
    for col in (col_a, col_b):
        if col not in df.columns:
            raise ValueError(f"column {col!r} not found in table")
    if n is None:
        n = palette.n
    if n != palette.n:
        raise PaletteCoverageError(
            f"binning uses {n} classes but palette {palette.name!r} is {palette.n}x{palette.n}"
        )

    bins_a = _bin_column(df[col_a], n)
    bins_b = _bin_column(df[col_b], n)

    out = df.copy()
    class_a_col = f"{col_a}_class"
    class_b_col = f"{col_b}_class"
    out[class_a_col] = bins_a.classes
    out[class_b_col] = bins_b.classes

    labels: List[object] = []
    colors: List[Optional[str]] = []
    for a, b in zip(out[class_a_col], out[class_b_col]):
        key = composite_key(a, b)
        if key is None:
            labels.append(pd.NA)
            colors.append(None)
            continue
        labels.append(f"{key[0]}-{key[1]}")
        colors.append(palette[key])
    out["bi_class"] = pd.Series(labels, index=out.index, dtype="string")
    out["bi_color"] = pd.Series(colors, index=out.index, dtype=object)
    return BivariateResult(frame=out, breaks_a=bins_a.breaks, breaks_b=bins_b.breaks)
