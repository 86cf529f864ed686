"""Empirical Bayes moderation of per-region variance estimates."""
from __future__ import annotations

import logging
import math
from typing import Dict, Optional

import numpy as np
import patsy
import statsmodels.api as sm
from scipy import special

LOGGER = logging.getLogger(__name__)


def trigamma_inverse(x) -> np.ndarray:
    """Solve ``trigamma(y) = x`` for ``y`` by Newton iteration."""

    x = np.atleast_1d(np.asarray(x, dtype=float))
    y = np.full_like(x, np.nan)

    large = x > 1e7
    small = (x < 1e-6) & (x >= 0)
    y[large] = 1.0 / np.sqrt(x[large])
    y[small] = 1.0 / x[small]

    todo = np.isfinite(x) & (x >= 1e-6) & (x <= 1e7)
    if np.any(todo):
        xt = x[todo]
        yt = 0.5 + 1.0 / xt
        for _ in range(50):
            tri = special.polygamma(1, yt)
            dif = tri * (1.0 - tri / xt) / special.polygamma(2, yt)
            yt = yt + dif
            if np.max(-dif / yt) < 1e-8:
                break
        else:
            LOGGER.warning("trigamma_inverse: iteration limit exceeded")
        y[todo] = yt
    return y


def _spline_basis(covariate: np.ndarray, df: int):
    if df < 3:
        basis = np.column_stack([np.ones_like(covariate), covariate])
        return basis, None
    matrix = patsy.dmatrix(f"cr(x, df={df}) - 1", {"x": covariate})
    return np.asarray(matrix), matrix.design_info


def _predict_basis(design_info, covariate: np.ndarray, bounds) -> np.ndarray:
    clipped = np.clip(covariate, bounds[0], bounds[1])
    if design_info is None:
        return np.column_stack([np.ones_like(clipped), clipped])
    (matrix,) = patsy.build_design_matrices([design_info], {"x": clipped})
    return np.asarray(matrix)


def fit_f_dist(x, df1, covariate=None) -> Dict[str, object]:
    """Moment estimation of a scaled F prior for sample variances.

    With a covariate, the log-scale is a natural cubic spline of the
    covariate fitted by ordinary least squares.  Returns ``scale`` (scalar
    or per-observation) and ``df2``.
    """

    x = np.atleast_1d(np.asarray(x, dtype=float))
    n = x.size
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), x.shape).copy()
    if n == 1:
        return {"scale": x.copy(), "df2": 0.0}

    ok = np.isfinite(df1) & (df1 > 1e-15) & np.isfinite(x) & (x > -1e-15)
    n_ok = int(ok.sum())
    if n_ok == 1:
        return {"scale": float(x[ok][0]), "df2": 0.0}
    if n_ok == 0:
        raise ValueError("No finite variances with positive degrees of freedom")

    not_all_ok = n_ok < n
    cov_bad = None
    if covariate is not None:
        covariate = np.asarray(covariate, dtype=float)
        if covariate.size != n:
            raise ValueError("covariate must have the same length as x")
        cov_bad = covariate[~ok]
        covariate = covariate[ok]
    x = x[ok]
    df1 = df1[ok]

    spline_df = 0
    if covariate is not None:
        spline_df = 1 + int(n_ok >= 3) + int(n_ok >= 6) + int(n_ok >= 30)
        spline_df = min(spline_df, np.unique(covariate).size)
        if spline_df < 2:
            out = fit_f_dist(x, df1)
            out["scale"] = np.full(n, float(out["scale"]))
            return out

    x = np.maximum(x, 0.0)
    m = float(np.median(x))
    if m == 0:
        LOGGER.warning("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    elif np.any(x == 0):
        LOGGER.warning("Zero sample variances detected, have been offset away from zero")
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - special.digamma(df1 / 2.0) + np.log(df1 / 2.0)

    if covariate is None:
        e_mean = float(e.mean())
        e_var = float(((e - e_mean) ** 2).sum() / (n_ok - 1))
    else:
        basis, design_info = _spline_basis(covariate, spline_df)
        ols = sm.OLS(e, basis).fit()
        e_mean = np.asarray(ols.fittedvalues, dtype=float)
        if not_all_ok:
            full = np.zeros(n)
            full[ok] = e_mean
            bad_basis = _predict_basis(design_info, cov_bad, (covariate.min(), covariate.max()))
            full[~ok] = bad_basis @ np.asarray(ols.params)
            e_mean = full
        e_var = float(ols.ssr / ols.df_resid) if ols.df_resid > 0 else 0.0

    e_var -= float(np.mean(special.polygamma(1, df1 / 2.0)))
    if e_var > 0:
        df2 = float(2.0 * trigamma_inverse(e_var)[0])
        scale = np.exp(e_mean + special.digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = math.inf
        scale = float(np.mean(x)) if covariate is None else np.exp(e_mean)

    if np.ndim(scale) == 0:
        scale = float(scale)
    return {"scale": scale, "df2": df2}


def squeeze_var(var, df, covariate=None) -> Dict[str, object]:
    """Shrink variances toward a (possibly trended) prior.

    Returns ``var_post``, ``var_prior`` and ``df_prior``.
    """

    var = np.atleast_1d(np.asarray(var, dtype=float))
    n = var.size
    if n == 0:
        raise ValueError("var is empty")
    if n == 1:
        return {"var_post": var.copy(), "var_prior": var.copy(), "df_prior": 0.0}
    df = np.broadcast_to(np.asarray(df, dtype=float), var.shape).copy()

    if np.all(df == 0):
        return {"var_post": var.copy(), "var_prior": var.copy(), "df_prior": 0.0}

    fit = fit_f_dist(var, df1=df, covariate=covariate)
    df_prior = fit["df2"]
    if df_prior is None or (isinstance(df_prior, float) and math.isnan(df_prior)):
        raise ValueError("Could not estimate prior df")
    var_prior = np.broadcast_to(np.asarray(fit["scale"], dtype=float), var.shape).copy()

    if math.isfinite(df_prior):
        var_post = (df * var + df_prior * var_prior) / (df + df_prior)
    else:
        var_post = var_prior.copy()

    return {"var_post": var_post, "var_prior": var_prior, "df_prior": df_prior}


def prior_df_summary(df_prior: Optional[float]) -> str:
    if df_prior is None:
        return "NA"
    return "Inf" if math.isinf(df_prior) else f"{df_prior:.3f}"
