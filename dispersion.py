"""Negative binomial dispersion estimation by weighted likelihood empirical Bayes."""
from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

import numpy as np

from dgelist import DGEList, ave_log_cpm
from ebayes import prior_df_summary, squeeze_var
from nbglm import (
    adjusted_profile_lik,
    combo_groups,
    fit_nb_glm,
    maximize_interpolant,
    reduce_design,
    residual_df,
    zero_fit_mask,
)

LOGGER = logging.getLogger(__name__)

TREND_METHODS = ("loess", "movingave", "none")


def default_span(n_rows: int) -> float:
    if n_rows <= 50:
        return 1.0
    return 0.25 + 0.75 * (50.0 / n_rows) ** (1.0 / 3.0)


def _neighbour_windows(x_sorted: np.ndarray, n_span: int) -> np.ndarray:
    """Start index of the ``n_span`` nearest neighbours of every sorted point."""

    n = x_sorted.size
    starts = np.zeros(n, dtype=int)
    lo = 0
    for i in range(n):
        while lo + n_span < n and (
            lo + n_span <= i or x_sorted[lo + n_span] - x_sorted[i] < x_sorted[i] - x_sorted[lo]
        ):
            lo += 1
        starts[i] = lo
    return starts


def loess_by_col(y: np.ndarray, x: np.ndarray, span: float = 0.5) -> np.ndarray:
    """Local constant tricube smooth of every column of ``y`` against ``x``."""

    y = np.atleast_2d(np.asarray(y, dtype=float))
    x = np.asarray(x, dtype=float)
    n = x.size
    n_span = min(int(math.floor(span * n)), n)
    if n_span <= 1:
        return y.copy()

    order = np.argsort(x, kind="mergesort")
    xs = x[order]
    ys = y[order]
    starts = _neighbour_windows(xs, n_span)
    offsets = np.arange(n_span)

    fitted = np.empty_like(ys)
    chunk = max(1, 2_000_000 // max(1, n_span * ys.shape[1]))
    for begin in range(0, n, chunk):
        end = min(n, begin + chunk)
        window = starts[begin:end, None] + offsets
        dist = np.abs(xs[window] - xs[begin:end, None])
        max_dist = dist.max(axis=1, keepdims=True)
        with np.errstate(divide="ignore", invalid="ignore"):
            weights = np.where(max_dist > 1e-14, (1.0 - (dist / max_dist) ** 3) ** 3, 1.0)
        total = weights.sum(axis=1, keepdims=True)
        fitted[begin:end] = np.einsum("gk,gkc->gc", weights, ys[window]) / total

    out = np.empty_like(fitted)
    out[order] = fitted
    return out


def moving_average_by_col(y: np.ndarray, x: np.ndarray, span: float = 0.5) -> np.ndarray:
    """Centred moving average of the columns of ``y`` ordered by ``x``."""

    y = np.atleast_2d(np.asarray(y, dtype=float))
    n = y.shape[0]
    width = max(1, min(int(math.floor(span * n)), n))
    order = np.argsort(np.asarray(x, dtype=float), kind="mergesort")
    ys = y[order]
    cumulative = np.vstack([np.zeros((1, ys.shape[1])), np.cumsum(ys, axis=0)])
    half = width // 2
    lo = np.clip(np.arange(n) - half, 0, n)
    hi = np.clip(lo + width, 0, n)
    lo = np.clip(hi - width, 0, n)
    smoothed = (cumulative[hi] - cumulative[lo]) / (hi - lo)[:, None]
    out = np.empty_like(smoothed)
    out[order] = smoothed
    return out


def _shared_loglik(loglik: np.ndarray, covariate: np.ndarray, trend_method: str, span: float) -> np.ndarray:
    if trend_method == "loess":
        return loess_by_col(loglik, covariate, span)
    if trend_method == "movingave":
        return moving_average_by_col(loglik, covariate, span)
    return np.broadcast_to(loglik.mean(axis=0), loglik.shape).copy()


def estimate_disp(
    y: DGEList,
    design: np.ndarray,
    *,
    prior_df: Optional[float] = None,
    trend_method: str = "loess",
    tagwise: bool = True,
    span: Optional[float] = None,
    min_row_sum: float = 5,
    grid_length: int = 21,
    grid_range: Sequence[float] = (-10.0, 10.0),
) -> DGEList:
    """Estimate common, trended and tagwise NB dispersions for ``y``.

    The Cox-Reid adjusted profile likelihood of each region is evaluated on a
    log2-spaced dispersion grid.  The summed grid gives the common dispersion,
    a local smooth of the grid against abundance gives the trend, and each
    region's own likelihood is combined with the smoothed one (weighted by
    the prior degrees of freedom) to give its tagwise dispersion.
    """

    if trend_method not in TREND_METHODS:
        raise ValueError(f"Unknown trend_method '{trend_method}'; choose from {', '.join(TREND_METHODS)}")

    X = np.asarray(design, dtype=float)
    n_rows, n_libs = y.counts.shape
    if X.shape[0] != n_libs:
        raise ValueError("Design matrix must have one row per sample")
    n_coefs = X.shape[1]
    if np.linalg.matrix_rank(X) < n_coefs:
        raise ValueError("Design matrix is not of full rank")
    if n_libs - n_coefs <= 0:
        LOGGER.warning("No residual degrees of freedom: dispersion cannot be estimated")
        y.common_dispersion = math.nan
        y.trended_dispersion = np.full(n_rows, math.nan)
        y.tagwise_dispersion = np.full(n_rows, math.nan)
        return y

    counts = y.counts.to_numpy(dtype=float)
    offset = np.broadcast_to(y.get_offset(), counts.shape)
    sel = counts.sum(axis=1) >= min_row_sum
    n_sel = int(sel.sum())
    if n_sel == 0:
        raise ValueError(f"No regions have a total count of at least {min_row_sum}")

    spline_pts = np.linspace(grid_range[0], grid_range[1], grid_length)
    spline_disp = 0.1 * 2.0 ** spline_pts
    l0 = np.zeros((n_sel, grid_length))

    y_sel = counts[sel]
    off_sel = offset[sel]
    first = fit_nb_glm(y_sel, X, off_sel, 0.05)
    zero_fit = zero_fit_mask(y_sel, first.fitted_values)

    for rows, pattern in combo_groups(zero_fit):
        nonzero = ~pattern
        if not np.any(nonzero):
            continue
        if np.all(nonzero):
            redesign = X
        else:
            redesign = reduce_design(X[nonzero])
            if redesign.shape[0] == redesign.shape[1]:
                continue
        sub_y = y_sel[np.ix_(rows, nonzero)]
        sub_off = off_sel[np.ix_(rows, nonzero)]
        last_beta = None
        for i, disp in enumerate(spline_disp):
            apl, last_beta = adjusted_profile_lik(disp, sub_y, redesign, sub_off, start=last_beta)
            l0[rows, i] = apl

    overall = maximize_interpolant(spline_pts, l0.sum(axis=0, keepdims=True))[0]
    common = float(0.1 * 2.0 ** overall)
    y.common_dispersion = common
    LOGGER.info("Common dispersion %.4f (BCV %.4f)", common, math.sqrt(common))

    abundance = ave_log_cpm(y)
    y.ave_log_cpm = ave_log_cpm(y, dispersion=common)

    if span is None:
        span = default_span(n_sel)
    y.span = span

    if trend_method == "none":
        m0 = _shared_loglik(l0, abundance[sel], "none", span)
        disp_trend = np.full(n_sel, common)
        trended = np.full(n_rows, common)
    else:
        m0 = _shared_loglik(l0, abundance[sel], trend_method, span)
        disp_trend = 0.1 * 2.0 ** maximize_interpolant(spline_pts, m0)
        trended = np.full(n_rows, disp_trend[np.argmin(abundance[sel])])
        trended[sel] = disp_trend
    y.trended_dispersion = trended

    if not tagwise:
        return y

    if prior_df is None:
        trend_fit = fit_nb_glm(y_sel, X, off_sel, disp_trend)
        zero_fit = zero_fit_mask(y_sel, trend_fit.fitted_values)
        df_res = residual_df(zero_fit, X)
        with np.errstate(divide="ignore", invalid="ignore"):
            s2 = trend_fit.deviance / df_res
        s2[df_res == 0] = 0.0
        s2 = np.maximum(s2, 0.0)
        prior_df = squeeze_var(s2, df_res, covariate=abundance[sel])["df_prior"]
    y.prior_df = float(prior_df)
    LOGGER.info("Dispersion prior df %s", prior_df_summary(y.prior_df))

    prior_n = y.prior_df / (n_libs - n_coefs)
    tagwise_disp = trended.copy()
    if math.isfinite(prior_n):
        combined = l0 + prior_n * m0
        tagwise_disp[sel] = 0.1 * 2.0 ** maximize_interpolant(spline_pts, combined)
    y.tagwise_dispersion = tagwise_disp
    return y
