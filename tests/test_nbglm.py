import math

import numpy as np
import pytest

from nbglm import (
    add_prior_count,
    adjusted_profile_lik,
    combo_groups,
    fit_nb_glm,
    fit_one_group,
    maximize_interpolant,
    nbinom_deviance,
    nbinom_loglik,
    reduce_design,
    residual_df,
    zero_fit_mask,
)

GROUP_DESIGN = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.0, 1.0]])


def test_deviance_of_perfect_fit_is_zero():
    y = np.array([[0.0, 3.0, 10.0, 250.0]])
    assert nbinom_deviance(y, y, 0.1)[0] == pytest.approx(0.0, abs=1e-6)


def test_deviance_grows_with_misfit():
    y = np.array([[10.0, 10.0, 10.0, 10.0]])
    close = nbinom_deviance(y, np.full_like(y, 11.0), 0.1)[0]
    far = nbinom_deviance(y, np.full_like(y, 20.0), 0.1)[0]
    assert 0 < close < far


def test_loglik_matches_poisson_at_zero_dispersion():
    y = np.array([0.0, 2.0, 7.0])
    mu = np.array([1.0, 2.5, 6.0])
    expected = [-1.0, 2 * math.log(2.5) - 2.5 - math.log(2), 7 * math.log(6.0) - 6.0 - math.log(5040)]
    np.testing.assert_allclose(nbinom_loglik(y, mu, 0.0), expected, rtol=1e-10)


def test_glm_recovers_group_means():
    counts = np.array([[10.0, 10.0, 40.0, 40.0], [5.0, 5.0, 5.0, 5.0]])
    fit = fit_nb_glm(counts, GROUP_DESIGN, 0.0, 0.1)
    np.testing.assert_allclose(fit.coefficients[0], np.log([10.0, 40.0]), atol=1e-4)
    np.testing.assert_allclose(fit.coefficients[1], np.log([5.0, 5.0]), atol=1e-4)
    np.testing.assert_allclose(fit.fitted_values, counts, rtol=1e-4)
    assert np.all(fit.deviance < 1e-4)
    assert fit.df_residual == 2
    assert not fit.failed.any()


def test_glm_uses_offsets():
    lib = np.array([1e6, 2e6, 1e6, 2e6])
    counts = np.array([[100.0, 200.0, 300.0, 600.0]])
    fit = fit_nb_glm(counts, GROUP_DESIGN, np.log(lib), 0.05)
    np.testing.assert_allclose(fit.coefficients[0], np.log([100.0 / 1e6, 300.0 / 1e6]), atol=1e-4)


def test_glm_rejects_mismatched_design():
    with pytest.raises(ValueError):
        fit_nb_glm(np.ones((2, 3)), GROUP_DESIGN, 0.0, 0.1)


def test_glm_rejects_negative_dispersion():
    with pytest.raises(ValueError):
        fit_nb_glm(np.ones((1, 4)), GROUP_DESIGN, 0.0, -0.1)


def test_one_group_fit():
    counts = np.array([[5.0, 5.0, 5.0], [0.0, 0.0, 0.0], [2.0, 4.0, 6.0]])
    beta = fit_one_group(counts, 0.0, 0.1)
    assert beta[0] == pytest.approx(math.log(5.0), abs=1e-8)
    assert beta[1] == -np.inf
    assert np.isfinite(beta[2])


def test_add_prior_count_scales_with_library_size():
    counts = np.zeros((1, 2))
    shifted, offset = add_prior_count(counts, np.log([1e6, 3e6]), 2.0)
    np.testing.assert_allclose(shifted[0], [1.0, 3.0])
    np.testing.assert_allclose(np.exp(offset[0]), [1e6 + 2.0, 3e6 + 6.0])


def test_adjusted_profile_lik_is_finite_and_returns_coefficients():
    counts = np.array([[10.0, 12.0, 30.0, 28.0], [3.0, 0.0, 4.0, 6.0]])
    apl, beta = adjusted_profile_lik(0.1, counts, GROUP_DESIGN, 0.0)
    assert apl.shape == (2,)
    assert np.all(np.isfinite(apl))
    assert beta.shape == (2, 2)


def test_maximize_interpolant_finds_quadratic_peak():
    x = np.linspace(-2.0, 2.0, 9)
    y = np.vstack([-(x - 0.3) ** 2, -(x + 1.1) ** 2])
    np.testing.assert_allclose(maximize_interpolant(x, y), [0.3, -1.1], atol=1e-8)


def test_maximize_interpolant_at_grid_edge():
    x = np.linspace(0.0, 1.0, 5)
    assert maximize_interpolant(x, x[None, :])[0] == pytest.approx(1.0)


def test_combo_groups_groups_identical_rows():
    mask = np.array([[True, False], [False, False], [True, False]])
    groups = {tuple(pattern): rows.tolist() for rows, pattern in combo_groups(mask)}
    assert groups == {(False, False): [1], (True, False): [0, 2]}


def test_residual_df_discounts_zero_groups():
    counts = np.array([[0.0, 0.0, 5.0, 7.0], [1.0, 2.0, 5.0, 7.0]])
    fitted = np.array([[0.0, 0.0, 6.0, 6.0], [1.5, 1.5, 6.0, 6.0]])
    zero_fit = zero_fit_mask(counts, fitted)
    np.testing.assert_allclose(residual_df(zero_fit, GROUP_DESIGN), [1.0, 2.0])


def test_reduce_design_drops_dependent_columns():
    design = np.column_stack([np.ones(4), GROUP_DESIGN])
    assert reduce_design(design).shape == (4, 2)
