import numpy as np
import pandas as pd
import pytest

from bivariate_classes import (
    PALETTES,
    BivariatePalette,
    PaletteCoverageError,
    assign_classes,
    classify_bivariate,
    composite_key,
    format_break_labels,
    get_palette,
    money_k,
    palette_legend_frame,
    quantile_bin,
    quantile_breaks,
)


EXAMPLE = [10, 20, 20, 30, 40, 50, 60, 70, 80, 90]


def test_tercile_example():
    bins = quantile_bin(EXAMPLE, 3)
    assert bins.breaks[0] == 10
    assert bins.breaks[-1] == 90
    # numpy linear (type 7) quantiles put the inner breaks at 30/60, not the approximate 36.7/63.3; the classes agree
    assert bins.breaks[1] == pytest.approx(30.0)
    assert bins.breaks[2] == pytest.approx(60.0)
    classes = dict(zip(EXAMPLE, bins.classes))
    assert classes[20] == 1
    assert classes[50] == 2
    assert classes[90] == 3


@pytest.mark.parametrize("n", [2, 3, 4, 5, 7])
def test_classes_in_range_and_extremes(n):
    rng = np.random.default_rng(n)
    values = rng.lognormal(mean=10, sigma=0.6, size=500)
    bins = quantile_bin(values, n)
    assert len(bins.breaks) == n + 1
    assert np.all(np.diff(bins.breaks) >= 0)
    assert bins.breaks[0] == values.min()
    assert bins.breaks[-1] == values.max()
    assert bins.classes.between(1, n).all()
    assert bins.classes[values == values.min()].eq(1).all()
    assert bins.classes[values == values.max()].eq(n).all()


def test_boundary_value_goes_to_lower_class():
    classes = assign_classes([0, 10, 10.5, 20, 30], [0, 10, 20, 30])
    assert classes.tolist() == [1, 1, 2, 2, 3]


def test_missing_values_are_not_classified():
    values = pd.Series([5.0, None, 7.0, np.nan, 9.0, "x"])
    bins = quantile_bin(values, 3)
    assert str(bins.classes.dtype) == "Int64"
    assert bins.classes.isna().tolist() == [False, True, False, True, False, True]
    assert bins.classes[0] == 1
    assert bins.classes[4] == 3
    # breaks come from valid values only
    assert bins.breaks[0] == 5.0 and bins.breaks[-1] == 9.0


def test_classes_keep_input_index():
    s = pd.Series([3.0, 1.0, 2.0], index=["b", "a", "c"])
    classes = quantile_bin(s, 3).classes
    assert list(classes.index) == ["b", "a", "c"]
    assert classes["a"] == 1 and classes["b"] == 3


def test_identical_values_collapse_to_first_class():
    bins = quantile_bin([4.0] * 6, 3)
    assert bins.breaks.tolist() == [4.0, 4.0, 4.0, 4.0]
    assert bins.classes.tolist() == [1] * 6


def test_many_ties_do_not_crash():
    values = [0, 0, 0, 0, 0, 0, 0, 1, 2, 3]
    bins = quantile_bin(values, 3)
    assert np.all(np.diff(bins.breaks) >= 0)
    assert bins.classes[:7].eq(1).all()
    assert bins.classes.iloc[-1] == 3


def test_invalid_arguments():
    with pytest.raises(ValueError):
        quantile_breaks([1, 2, 3], 1)
    with pytest.raises(ValueError):
        quantile_breaks([None, np.nan], 3)
    with pytest.raises(ValueError):
        assign_classes([1, 2], [0, 5, 3])


@pytest.mark.parametrize("name", sorted(PALETTES))
def test_builtin_palettes_are_total(name):
    palette = get_palette(name)
    assert len(palette) == palette.n ** 2
    for a in range(1, palette.n + 1):
        for b in range(1, palette.n + 1):
            assert palette.color(a, b).startswith("#")
            assert (a, b) in palette
    grid = palette.grid()
    assert len(grid) == palette.n and all(len(row) == palette.n for row in grid)
    assert grid[0][0] == palette.color(1, 1)
    assert grid[-1][0] == palette.color(1, palette.n)


def test_palette_corners_are_distinct():
    p = get_palette("DkBlue")
    corners = {p.color(1, 1), p.color(3, 3), p.color(1, 3), p.color(3, 1)}
    assert len(corners) == 4


def test_incomplete_palette_is_rejected():
    colors = {(a, b): "#000000" for a in range(1, 4) for b in range(1, 4)}
    del colors[(2, 3)]
    with pytest.raises(ValueError):
        BivariatePalette("broken", colors)
    colors[(2, 3)] = "#000000"
    colors[(0, 1)] = "#ffffff"
    with pytest.raises(ValueError):
        BivariatePalette("extra", colors)


def test_lookup_outside_grid_is_fatal():
    palette = get_palette("GrPink")
    with pytest.raises(PaletteCoverageError):
        palette.color(4, 2)
    with pytest.raises(KeyError):
        palette[(4, 2)]


def test_unknown_palette_name():
    with pytest.raises(ValueError):
        get_palette("Rainbow")


def test_legend_frame_lists_every_cell():
    frame = palette_legend_frame(get_palette("GrPink4"))
    assert len(frame) == 16
    assert set(frame.columns) == {"class_a", "class_b", "color"}


def test_classify_adds_derived_columns_without_mutating_input():
    df = pd.DataFrame({"DAUID": ["1", "2", "3"], "pmd": [1.0, None, 3.0], "income": [10.0, 55.0, 90.0]})
    before = df.copy()
    result = classify_bivariate(df, "pmd", "income", get_palette("DkBlue"))
    pd.testing.assert_frame_equal(df, before)
    out = result.frame
    for c in ["pmd_class", "income_class", "bi_class", "bi_color"]:
        assert c in out.columns
    pd.testing.assert_frame_equal(out[before.columns], before)
    assert out.loc[0, "bi_class"] == "1-1"
    assert out.loc[0, "bi_color"] == get_palette("DkBlue").color(1, 1)
    assert out.loc[2, "bi_class"] == "3-3"


def test_missing_attribute_gives_no_color():
    df = pd.DataFrame({"pmd": [1.0, None, 3.0], "income": [10.0, 55.0, 90.0]})
    out = classify_bivariate(df, "pmd", "income", get_palette("DkBlue")).frame
    assert out.loc[1, "income_class"] == 2
    assert pd.isna(out.loc[1, "pmd_class"])
    assert out.loc[1, "bi_color"] is None
    assert pd.isna(out.loc[1, "bi_class"])
    assert out.loc[1, "bi_color"] != get_palette("DkBlue").color(1, 2)


def test_column_without_values_leaves_every_record_unclassified():
    df = pd.DataFrame({"a": [np.nan, np.nan, np.nan], "b": [1.0, 2.0, 3.0]})
    result = classify_bivariate(df, "a", "b", get_palette("DkBlue"))
    out = result.frame
    assert len(result.breaks_a) == 0
    assert len(result.breaks_b) == 4
    assert out["a_class"].isna().all()
    assert out["b_class"].tolist() == [1, 2, 3]
    assert out["bi_color"].isna().all()
    assert out["bi_class"].isna().all()
    assert format_break_labels(result.breaks_a) == []


def test_class_count_mismatch_is_fatal():
    df = pd.DataFrame({"a": range(20), "b": range(20)})
    with pytest.raises(PaletteCoverageError):
        classify_bivariate(df, "a", "b", get_palette("DkBlue"), n=4)


def test_four_class_palette():
    df = pd.DataFrame({"a": range(40), "b": list(range(40))[::-1]})
    out = classify_bivariate(df, "a", "b", get_palette("GrPink4")).frame
    assert out["a_class"].between(1, 4).all()
    assert out.loc[0, "bi_class"] == "1-4"
    assert out.loc[39, "bi_class"] == "4-1"


def test_classification_is_idempotent():
    rng = np.random.default_rng(7)
    df = pd.DataFrame({"a": rng.normal(size=200), "b": rng.gamma(2.0, size=200)})
    df.loc[[3, 50], "a"] = np.nan
    first = classify_bivariate(df, "a", "b", get_palette("TealPurple"))
    second = classify_bivariate(df, "a", "b", get_palette("TealPurple"))
    pd.testing.assert_frame_equal(first.frame, second.frame)
    np.testing.assert_array_equal(first.breaks_a, second.breaks_a)


def test_missing_column():
    with pytest.raises(ValueError):
        classify_bivariate(pd.DataFrame({"a": [1, 2]}), "a", "b", get_palette("DkBlue"))


def test_composite_key():
    assert composite_key(2, 3) == (2, 3)
    assert composite_key(pd.NA, 3) is None


def test_break_labels():
    assert money_k(45250) == "$45k"
    assert money_k(850) == "$850"
    assert format_break_labels([20000, 45000, 62000], money_k) == ["$20k–$45k", "$45k–$62k"]
    assert format_break_labels([0, 0.5, 1], "{:.1f}") == ["0.0–0.5", "0.5–1.0"]
