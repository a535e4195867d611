import pytest
import numpy as np
import pandas as pd

from hdfereg.core import groups as grp
from hdfereg.core.errors import DegenerateGroupingError

# ---------------------------------------------------------------------
# Unit Tests: Label Encoding
# ---------------------------------------------------------------------

def test_to_codes_sorted_levels():
    codes, uniques = grp.to_codes(["b", "a", "b", "c"])
    assert codes.tolist() == [1, 0, 1, 2]
    assert list(uniques) == ["a", "b", "c"]
    assert codes.dtype == np.int64


def test_to_codes_rejects_missing():
    with pytest.raises(ValueError):
        grp.to_codes(np.array(["a", None, "b"], dtype=object))


def test_single_level_grouping_is_degenerate():
    with pytest.raises(DegenerateGroupingError) as info:
        grp.make_grouping("firm", [7, 7, 7])
    assert info.value.name == "firm"
    # allowed when explicitly requested (e.g. cluster labels)
    g = grp.make_grouping("firm", [7, 7, 7], allow_single=True)
    assert g.n_levels == 1


def test_grouping_spec_validates_codes():
    with pytest.raises(ValueError):
        grp.GroupingSpec(name="g", codes=np.array([0, 3]), n_levels=2)
    with pytest.raises(ValueError):
        grp.GroupingSpec(name="g", codes=np.array([0, 1]), n_levels=2, slope=np.array([1.0]))


# ---------------------------------------------------------------------
# Unit Tests: Combination and Slopes
# ---------------------------------------------------------------------

def test_combine_uses_observed_pairs_only():
    a = grp.make_grouping("a", [0, 0, 1, 1, 2])
    b = grp.make_grouping("b", ["x", "y", "x", "x", "y"])
    ab = grp.combine(a, b)
    # observed pairs: (0,x), (0,y), (1,x), (2,y)
    assert ab.name == "a^b"
    assert ab.n_levels == 4
    assert ab.combined_from == ("a", "b")
    assert ab.codes[2] == ab.codes[3]
    assert (1, "x") in list(ab.level_labels())


def test_combine_single_observed_pair():
    a = grp.make_grouping("a", [0, 0, 0], allow_single=True)
    b = grp.make_grouping("b", ["x", "x", "x"], allow_single=True)
    with pytest.raises(DegenerateGroupingError, match=r"a\^b"):
        grp.combine(a, b)
    ab = grp.combine(a, b, allow_single=True)
    assert ab.n_levels == 1
    assert ab.combined_from == ("a", "b")


def test_varying_slope_specs():
    g = grp.make_grouping("firm", [0, 0, 1, 1])
    specs = grp.varying_slope(g, [1.0, 2.0, 3.0, 4.0])
    assert len(specs) == 2
    assert not specs[0].is_slope
    assert specs[1].is_slope
    assert specs[1].name == "firm[slope]"
    only = grp.varying_slope(g, [1.0, 2.0, 3.0, 4.0], include_intercept=False)
    assert len(only) == 1


def test_group_index_order_and_duplicates():
    idx = grp.GroupIndex()
    idx.add("firm", [0, 0, 1, 1])
    idx.add("year", [0, 1, 0, 1])
    idx.combine("firm", "year")
    assert idx.names == ["firm", "year", "firm^year"]
    assert len(idx) == 3
    with pytest.raises(ValueError):
        idx.add("firm", [1, 1, 0, 0])
    with pytest.raises(ValueError):
        idx.add("other", [0, 1, 0])
    with pytest.raises(KeyError):
        idx["missing"]


def test_group_index_from_frame_keeps_column_order():
    df = pd.DataFrame({"year": [2001, 2002, 2001], "firm": ["b", "a", "a"]})
    idx = grp.GroupIndex.from_frame(df, ["firm", "year"])
    assert idx.names == ["firm", "year"]
    assert idx["firm"].codes.tolist() == [1, 0, 0]
    assert list(idx["year"].level_labels()) == [2001, 2002]
    with pytest.raises(DegenerateGroupingError):
        grp.GroupIndex.from_mapping({"c": ["x", "x", "x"]})


def test_subset_groupings_redensifies():
    g = grp.make_grouping("g", [0, 1, 2, 2, 1])
    (sub,) = grp.subset_groupings([g], np.array([True, False, True, True, False]))
    assert sub.n_levels == 2
    assert sub.codes.tolist() == [0, 1, 1]
    assert list(sub.level_labels()) == [0, 2]


# ---------------------------------------------------------------------
# Unit Tests: Graph Utilities
# ---------------------------------------------------------------------

def test_connected_components_two_blocks():
    a = grp.make_grouping("a", [0, 0, 1, 1])
    b = grp.make_grouping("b", [0, 1, 2, 3])
    n_comp, comp_a, comp_b = grp.connected_components(a, b)
    assert n_comp == 2
    assert comp_a[0] != comp_a[1]
    assert comp_b[0] == comp_b[1] == comp_a[0]
    assert comp_b[2] == comp_b[3] == comp_a[1]


def test_connected_components_many_repeated_pairs():
    # many observations on the same pair must still count as one edge
    a = grp.make_grouping("a", np.r_[np.zeros(300), np.ones(300)])
    b = grp.make_grouping("b", np.r_[np.zeros(300), np.zeros(299), 1.0])
    n_comp, _, _ = grp.connected_components(a, b)
    assert n_comp == 1


def test_is_nested():
    city = grp.make_grouping("city", [0, 1, 2, 3, 0, 1])
    region = grp.make_grouping("region", [0, 0, 1, 1, 0, 0])
    assert grp.is_nested(region, [city])
    assert not grp.is_nested(city, [region])
    assert not grp.is_nested(city, [])


def test_drop_singletons_iteratively():
    # Group 1: [0, 0, 0, 1] (1 is singleton)
    # Group 2: [0, 1, 1, 1] (0 is singleton)
    g1 = grp.make_grouping("g1", [0, 0, 0, 1])
    g2 = grp.make_grouping("g2", [0, 1, 1, 1])
    mask = grp.drop_singletons([g1, g2])
    assert mask.tolist() == [False, True, True, False]


def test_drop_singletons_no_drops():
    g1 = grp.make_grouping("g1", [0, 0, 1, 1])
    g2 = grp.make_grouping("g2", [0, 1, 0, 1])
    assert grp.drop_singletons([g1, g2]).all()
    assert grp.drop_singletons([]).size == 0


def test_perfect_prediction_count_and_binary():
    g = grp.make_grouping("g", [0, 0, 1, 1, 2, 2])
    y = np.array([0.0, 0.0, 1.0, 3.0, 1.0, 1.0])
    keep_count = grp.perfect_prediction_mask([g], y, kind="count")
    assert keep_count.tolist() == [False, False, True, True, True, True]
    keep_bin = grp.perfect_prediction_mask([g], np.array([0, 0, 0, 1, 1, 1.0]), kind="binary")
    assert keep_bin.tolist() == [False, False, True, True, False, False]
    with pytest.raises(ValueError):
        grp.perfect_prediction_mask([g], y, kind="gaussian")
