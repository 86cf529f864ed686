import numpy as np
import pandas as pd
import pytest

from conftest import simulate_nb_counts
from dgelist import DGEList, calc_norm_factors
from dispersion import estimate_disp
from ql_test import (
    benjamini_hochberg,
    decide_tests,
    glm_ql_fit,
    glm_ql_ftest,
    make_contrast,
    make_design,
    summarize_decisions,
    top_tags,
)

LEVELS = ["wildtype", "mutant"]


@pytest.fixture(scope="module")
def de_analysis():
    counts, groups, truth = simulate_nb_counts(
        n_regions=600, dispersion=0.05, de_fraction=0.1, log2fc=2.0, seed=5
    )
    genes = pd.DataFrame({"Gene Name": [f"GENE{i}" for i in range(len(counts))]}, index=counts.index)
    y = DGEList(counts, groups, genes=genes)
    calc_norm_factors(y)
    design = make_design(groups, LEVELS)
    estimate_disp(y, design.to_numpy())
    fit = glm_ql_fit(y, design)
    result = glm_ql_ftest(fit, contrast=make_contrast(design, "mutant", "wildtype"))
    return {"y": y, "fit": fit, "result": result, "truth": truth, "groups": groups}


def test_make_design_has_one_column_per_level():
    design = make_design(["b", "a", "b", "a"], ["a", "b"])
    assert list(design.columns) == ["a", "b"]
    np.testing.assert_array_equal(design.to_numpy(), [[0, 1], [1, 0], [0, 1], [1, 0]])


def test_make_design_defaults_to_first_seen_order():
    assert list(make_design(["x", "y", "x"]).columns) == ["x", "y"]


def test_make_design_rejects_unknown_group():
    with pytest.raises(ValueError):
        make_design(["a", "c"], ["a", "b"])


def test_make_contrast():
    design = make_design(["a", "b"], ["a", "b"])
    np.testing.assert_array_equal(make_contrast(design, "b", "a"), [-1.0, 1.0])
    with pytest.raises(ValueError):
        make_contrast(design, "c", "a")
    with pytest.raises(ValueError):
        make_contrast(design, "a", "a")


def test_benjamini_hochberg_known_values():
    pvalues = pd.Series([0.01, 0.04, 0.03, 0.5], index=list("abcd"))
    adjusted = benjamini_hochberg(pvalues)
    np.testing.assert_allclose(adjusted, [0.04, 0.16 / 3, 0.16 / 3, 0.5])
    assert list(adjusted.index) == list("abcd")


def test_benjamini_hochberg_treats_missing_as_one():
    adjusted = benjamini_hochberg(pd.Series([np.nan, 0.001]))
    assert adjusted.iloc[0] == 1.0
    assert adjusted.iloc[1] == pytest.approx(0.002)


def test_ql_fit_moderates_dispersion(de_analysis):
    fit = de_analysis["fit"]
    assert fit.df_prior > 0
    assert fit.var_post.shape == (600,)
    assert np.all(fit.var_post > 0)
    assert fit.df_residual == 4


def test_ftest_pvalues_are_valid(de_analysis):
    table = de_analysis["result"].table
    assert list(table.columns) == ["logFC", "logCPM", "F", "PValue"]
    assert table["PValue"].between(0, 1).all()
    assert de_analysis["result"].df_test == 1


def test_ftest_detects_planted_changes(de_analysis):
    result, truth = de_analysis["result"], de_analysis["truth"]
    decisions = decide_tests(result)
    planted = truth != 0
    called = decisions != 0
    assert (called & planted).sum() >= 45
    assert (called & ~planted).sum() <= 10
    hits = called & planted
    assert (np.sign(result.table.loc[hits, "logFC"]) == np.sign(truth[hits])).all()


def test_coefficient_and_contrast_tests_agree(de_analysis):
    y, groups = de_analysis["y"], de_analysis["groups"]
    design = pd.DataFrame(
        {"intercept": 1.0, "mutant": [float(g == "mutant") for g in groups]},
        index=y.counts.columns,
    )
    by_coef = glm_ql_ftest(glm_ql_fit(y, design), coef=1).table
    by_contrast = de_analysis["result"].table
    np.testing.assert_allclose(by_coef["logFC"], by_contrast["logFC"], atol=1e-3)
    np.testing.assert_allclose(by_coef["F"], by_contrast["F"], rtol=1e-3, atol=1e-3)


def test_top_tags_sorts_and_annotates(de_analysis):
    table = top_tags(de_analysis["result"], n=20)
    assert len(table) == 20
    assert table.index.name == "PeakID"
    assert table["PValue"].is_monotonic_increasing
    assert {"Gene Name", "logFC", "FDR"} <= set(table.columns)
    assert (table["FDR"] >= table["PValue"]).all()


def test_top_tags_rejects_unknown_sort(de_analysis):
    with pytest.raises(ValueError):
        top_tags(de_analysis["result"], sort_by="F")


def test_summarize_decisions():
    decisions = pd.Series([1, 0, 0, -1, 1])
    assert summarize_decisions(decisions) == {"Down": 1, "NotSig": 2, "Up": 2}
