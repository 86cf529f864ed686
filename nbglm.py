"""Negative binomial GLM machinery for count regression.

Every routine is vectorised across regions: ``counts`` is a regions x samples
array, ``design`` a samples x coefficients matrix and ``offset`` either a
per-sample vector or a full regions x samples matrix of log effective library
sizes.  Dispersions may be scalar or per region.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy import linalg, special
from scipy.interpolate import CubicSpline

LOGGER = logging.getLogger(__name__)

MILDLY_LOW_VALUE = 1e-8
LOW_VALUE = 1e-10
MAX_ETA = 50.0


@dataclass
class GLMFit:
    """Result of :func:`fit_nb_glm`."""

    coefficients: np.ndarray
    fitted_values: np.ndarray
    deviance: np.ndarray
    df_residual: int
    iterations: np.ndarray
    failed: np.ndarray


def _as_matrix(values, shape: Tuple[int, int]) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim == 0:
        return np.full(shape, float(arr))
    if arr.ndim == 1:
        if arr.size == shape[1]:
            return np.broadcast_to(arr, shape).copy()
        if arr.size == shape[0]:
            return np.repeat(arr[:, None], shape[1], axis=1)
    if arr.shape != shape:
        raise ValueError(f"Cannot broadcast array of shape {arr.shape} to {shape}")
    return arr


def _as_column(dispersion, n_rows: int) -> np.ndarray:
    disp = np.asarray(dispersion, dtype=float)
    if disp.ndim == 0:
        disp = np.full(n_rows, float(disp))
    if disp.size != n_rows:
        raise ValueError(f"Expected {n_rows} dispersion values, received {disp.size}")
    if np.any(disp < 0) or not np.all(np.isfinite(disp)):
        raise ValueError("Dispersions must be finite and non-negative")
    return disp.reshape(-1, 1)


def nbinom_unit_deviance(y: np.ndarray, mu: np.ndarray, dispersion) -> np.ndarray:
    """Unit deviance of the negative binomial distribution.

    Falls back to a Poisson expansion for tiny dispersions and a gamma
    approximation when ``dispersion * mu`` is very large.
    """

    y = np.asarray(y, dtype=float) + MILDLY_LOW_VALUE
    mu = np.asarray(mu, dtype=float) + MILDLY_LOW_VALUE
    phi = np.broadcast_to(np.asarray(dispersion, dtype=float), np.broadcast(y, mu).shape)
    y, mu = np.broadcast_arrays(y, mu)

    resid = y - mu
    log_ratio = np.log(y / mu)
    out = np.empty_like(y)

    poisson = phi < 1e-4
    gamma = (~poisson) & (phi * mu > 1e6)
    nb = ~(poisson | gamma)

    if np.any(poisson):
        p, r, lr = phi[poisson], resid[poisson], log_ratio[poisson]
        out[poisson] = 2.0 * (
            y[poisson] * lr - r - 0.5 * r * r * p * (1.0 + p * (2.0 / 3.0 * r - y[poisson]))
        )
    if np.any(gamma):
        g_mu = mu[gamma]
        out[gamma] = 2.0 * (resid[gamma] / g_mu - log_ratio[gamma]) * g_mu / (1.0 + phi[gamma] * g_mu)
    if np.any(nb):
        p, n_y, n_mu = phi[nb], y[nb], mu[nb]
        out[nb] = 2.0 * (
            n_y * log_ratio[nb] + (n_y + 1.0 / p) * np.log((1.0 + p * n_mu) / (1.0 + p * n_y))
        )
    return out


def nbinom_deviance(y: np.ndarray, mu: np.ndarray, dispersion) -> np.ndarray:
    """Total deviance per region (row sums of the unit deviance)."""

    y = np.atleast_2d(y)
    phi = _as_column(dispersion, y.shape[0])
    return nbinom_unit_deviance(y, mu, phi).sum(axis=1)


def nbinom_loglik(y: np.ndarray, mu: np.ndarray, dispersion) -> np.ndarray:
    """Negative binomial log-probabilities, Poisson where dispersion is zero."""

    y = np.asarray(y, dtype=float)
    mu = np.maximum(np.asarray(mu, dtype=float), 1e-300)
    phi = np.broadcast_to(np.asarray(dispersion, dtype=float), np.broadcast(y, mu).shape)
    y, mu = np.broadcast_arrays(y, mu)

    out = np.empty_like(y)
    poisson = phi <= 0
    if np.any(poisson):
        out[poisson] = special.xlogy(y[poisson], mu[poisson]) - mu[poisson] - special.gammaln(y[poisson] + 1.0)
    nb = ~poisson
    if np.any(nb):
        size = 1.0 / phi[nb]
        n_y, n_mu = y[nb], mu[nb]
        out[nb] = (
            special.gammaln(n_y + size)
            - special.gammaln(size)
            - special.gammaln(n_y + 1.0)
            + size * np.log(size / (size + n_mu))
            + special.xlogy(n_y, n_mu / (size + n_mu))
        )
    return out


def _start_coefficients(y: np.ndarray, design: np.ndarray, offset: np.ndarray) -> np.ndarray:
    z = np.log(y + 0.5) - offset
    beta, *_ = np.linalg.lstsq(design, z.T, rcond=None)
    return beta.T


def fit_nb_glm(
    counts: np.ndarray,
    design: np.ndarray,
    offset,
    dispersion,
    *,
    start: Optional[np.ndarray] = None,
    maxit: int = 50,
    tol: float = 1e-6,
) -> GLMFit:
    """Fit a negative binomial log-linear model to every row of ``counts``.

    Fisher scoring with a small ridge on the information matrix; a step is
    halved while it increases the deviance.  Coefficients for groups with all
    zero counts drift toward minus infinity until the deviance stops changing,
    which leaves their fitted values effectively at zero.
    """

    y = np.atleast_2d(np.asarray(counts, dtype=float))
    X = np.asarray(design, dtype=float)
    n_rows, n_libs = y.shape
    if X.shape[0] != n_libs:
        raise ValueError(
            f"Design has {X.shape[0]} rows but the counts matrix has {n_libs} samples"
        )
    n_coefs = X.shape[1]
    off = _as_matrix(offset, y.shape)
    phi = _as_column(dispersion, n_rows)

    if n_rows == 0:
        return GLMFit(
            coefficients=np.zeros((0, n_coefs)),
            fitted_values=np.zeros((0, n_libs)),
            deviance=np.zeros(0),
            df_residual=n_libs - n_coefs,
            iterations=np.zeros(0, dtype=int),
            failed=np.zeros(0, dtype=bool),
        )

    beta = _start_coefficients(y, X, off) if start is None else np.array(start, dtype=float, copy=True)
    eta = np.minimum(beta @ X.T + off, MAX_ETA)
    mu = np.exp(eta)
    dev = nbinom_unit_deviance(y, mu, phi).sum(axis=1)

    active = np.ones(n_rows, dtype=bool)
    iterations = np.zeros(n_rows, dtype=int)
    failed = np.zeros(n_rows, dtype=bool)
    eye = np.eye(n_coefs)

    for _ in range(maxit):
        idx = np.flatnonzero(active)
        if idx.size == 0:
            break
        iterations[idx] += 1
        a_mu = mu[idx]
        a_phi = phi[idx]
        w = a_mu / (1.0 + a_phi * a_mu)
        info = np.einsum("gn,np,nq->gpq", w, X, X)
        score = np.einsum("gn,np->gp", (y[idx] - a_mu) / (1.0 + a_phi * a_mu), X)
        ridge = LOW_VALUE * np.maximum(np.einsum("gpp->gp", info).max(axis=1), LOW_VALUE)
        info = info + ridge[:, None, None] * eye
        delta = np.linalg.solve(info, score[..., None])[..., 0]

        step = np.ones(idx.size)
        old_dev = dev[idx]
        new_beta = beta[idx] + delta
        new_mu = np.exp(np.minimum(new_beta @ X.T + off[idx], MAX_ETA))
        new_dev = nbinom_unit_deviance(y[idx], new_mu, a_phi).sum(axis=1)
        worse = new_dev > old_dev + 1e-12 * (np.abs(old_dev) + 1.0)
        for _halving in range(20):
            if not np.any(worse):
                break
            step[worse] /= 2.0
            w_idx = np.flatnonzero(worse)
            cand_beta = beta[idx][w_idx] + step[w_idx, None] * delta[w_idx]
            cand_mu = np.exp(np.minimum(cand_beta @ X.T + off[idx][w_idx], MAX_ETA))
            cand_dev = nbinom_unit_deviance(y[idx][w_idx], cand_mu, a_phi[w_idx]).sum(axis=1)
            new_beta[w_idx] = cand_beta
            new_mu[w_idx] = cand_mu
            new_dev[w_idx] = cand_dev
            worse[w_idx] = cand_dev > old_dev[w_idx] + 1e-12 * (np.abs(old_dev[w_idx]) + 1.0)

        stuck = worse
        improved = ~stuck
        upd = idx[improved]
        beta[upd] = new_beta[improved]
        mu[upd] = new_mu[improved]
        dev[upd] = new_dev[improved]

        converged = np.abs(old_dev - new_dev) < tol * (np.abs(new_dev) + 0.1)
        done = stuck | converged
        active[idx[done]] = False

    failed[active] = True
    if np.any(failed):
        LOGGER.debug("GLM fit did not converge for %d rows", int(failed.sum()))

    return GLMFit(
        coefficients=beta,
        fitted_values=mu,
        deviance=dev,
        df_residual=n_libs - n_coefs,
        iterations=iterations,
        failed=failed,
    )


def fit_one_group(
    counts: np.ndarray,
    offset,
    dispersion,
    *,
    maxit: int = 50,
    tol: float = 1e-10,
) -> np.ndarray:
    """Maximum likelihood log-mean for an intercept-only model per row."""

    y = np.atleast_2d(np.asarray(counts, dtype=float))
    off = _as_matrix(offset, y.shape)
    phi = _as_column(dispersion, y.shape[0])

    total = y.sum(axis=1)
    beta = np.full(y.shape[0], -np.inf)
    positive = total > 0
    if not np.any(positive):
        return beta

    yp, op, pp = y[positive], off[positive], phi[positive]
    b = np.log(total[positive] / np.exp(op).sum(axis=1))
    for _ in range(maxit):
        mu = np.exp(b[:, None] + op)
        denom = 1.0 + pp * mu
        score = ((yp - mu) / denom).sum(axis=1)
        info = (mu / denom).sum(axis=1)
        step = score / info
        b = b + step
        if np.all(np.abs(step) < tol):
            break
    beta[positive] = b
    return beta


def add_prior_count(counts: np.ndarray, offset, prior_count: float) -> Tuple[np.ndarray, np.ndarray]:
    """Add library-size scaled prior counts and widen the offsets to match."""

    y = np.atleast_2d(np.asarray(counts, dtype=float))
    lib_size = np.exp(_as_matrix(offset, y.shape))
    scaled = prior_count * lib_size / lib_size.mean()
    return y + scaled, np.log(lib_size + 2.0 * scaled)


def _log_det_ldl(matrices: np.ndarray) -> np.ndarray:
    """Sum of log LDL pivots, floored at ``LOW_VALUE`` for degenerate pivots."""

    a = np.array(matrices, dtype=float, copy=True)
    n = a.shape[-1]
    L = np.zeros_like(a)
    D = np.zeros(a.shape[:-1])
    for j in range(n):
        D[:, j] = a[:, j, j] - np.einsum("gk,gk->g", L[:, j, :j] ** 2, D[:, :j])
        safe = np.where(np.abs(D[:, j]) < LOW_VALUE, LOW_VALUE, D[:, j])
        for i in range(j + 1, n):
            L[:, i, j] = (a[:, i, j] - np.einsum("gk,gk,gk->g", L[:, i, :j], L[:, j, :j], D[:, :j])) / safe
        L[:, j, j] = 1.0
    pivots = np.where((D < LOW_VALUE) | ~np.isfinite(D), LOW_VALUE, D)
    return np.log(pivots).sum(axis=1)


def adjusted_profile_lik(
    dispersion,
    counts: np.ndarray,
    design: np.ndarray,
    offset,
    *,
    start: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Cox-Reid adjusted profile log-likelihood for each row.

    Returns the adjusted likelihood and the fitted coefficients so that
    successive grid points can warm-start from the previous solution.
    """

    y = np.atleast_2d(np.asarray(counts, dtype=float))
    X = np.asarray(design, dtype=float)
    fit = fit_nb_glm(y, X, offset, dispersion, start=start)
    mu = fit.fitted_values
    phi = _as_column(dispersion, y.shape[0])

    loglik = nbinom_loglik(y, mu, phi).sum(axis=1)
    w = mu / (1.0 + phi * mu)
    info = np.einsum("gn,np,nq->gpq", w, X, X)
    cox_reid = 0.5 * _log_det_ldl(info)
    return loglik - cox_reid, fit.coefficients


def combo_groups(matrix: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Group row indices of a boolean matrix by identical row pattern."""

    matrix = np.asarray(matrix, dtype=bool)
    if matrix.shape[0] == 0:
        return []
    patterns, inverse = np.unique(matrix, axis=0, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)
    return [(np.flatnonzero(inverse == k), patterns[k]) for k in range(patterns.shape[0])]


def design_rank(design: np.ndarray) -> int:
    design = np.asarray(design, dtype=float)
    if design.size == 0:
        return 0
    return int(np.linalg.matrix_rank(design))


def reduce_design(design: np.ndarray) -> np.ndarray:
    """Drop linearly dependent columns using a pivoted QR decomposition."""

    design = np.asarray(design, dtype=float)
    _, r, pivots = linalg.qr(design, mode="economic", pivoting=True)
    diag = np.abs(np.diag(r))
    if diag.size == 0:
        return design[:, :0]
    tol = diag.max() * max(design.shape) * np.finfo(float).eps
    rank = int((diag > tol).sum())
    return design[:, np.sort(pivots[:rank])]


def zero_fit_mask(counts: np.ndarray, fitted: np.ndarray) -> np.ndarray:
    return (np.asarray(counts) < 1e-4) & (np.asarray(fitted) < 1e-4)


def residual_df(zero_fit: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Residual degrees of freedom after discarding observations fitted at zero."""

    zero_fit = np.atleast_2d(np.asarray(zero_fit, dtype=bool))
    design = np.asarray(design, dtype=float)
    n_obs = zero_fit.shape[1]
    n_zero = zero_fit.sum(axis=1)
    df = np.full(zero_fit.shape[0], n_obs - design.shape[1], dtype=float)

    some_zero = n_zero > 0
    if np.any(some_zero):
        sub = zero_fit[some_zero]
        df_sub = (n_obs - n_zero[some_zero]).astype(float)
        for rows, pattern in combo_groups(sub):
            df_sub[rows] -= design_rank(design[~pattern])
        df[some_zero] = np.maximum(df_sub, 0.0)
    return df


def maximize_interpolant(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Location of the maximum of a cubic spline through each row of ``y``.

    The spline is searched on the grid intervals either side of the largest
    observed grid value, where the turning point is found exactly from the
    derivative of the local cubic.
    """

    x = np.asarray(x, dtype=float)
    y = np.atleast_2d(np.asarray(y, dtype=float))
    if x.size != y.shape[1]:
        raise ValueError("Grid and likelihood matrix have incompatible sizes")
    if x.size < 3:
        raise ValueError("At least three grid points are needed for interpolation")

    rows = np.arange(y.shape[0])
    imax = np.argmax(y, axis=1)
    best_x = x[imax].copy()
    best_y = y[rows, imax].copy()

    spline = CubicSpline(x, y, axis=1)
    coefs = spline.c  # (4, n_intervals, n_rows)
    n_intervals = x.size - 1

    for shift in (-1, 0):
        k = imax + shift
        valid = (k >= 0) & (k < n_intervals)
        kk = np.clip(k, 0, n_intervals - 1)
        a = coefs[0, kk, rows]
        b = coefs[1, kk, rows]
        c = coefs[2, kk, rows]
        d = coefs[3, kk, rows]
        h = x[kk + 1] - x[kk]

        with np.errstate(divide="ignore", invalid="ignore"):
            disc = b * b - 3.0 * a * c
            sqrt_disc = np.sqrt(np.where(disc >= 0, disc, np.nan))
            small_a = np.abs(a) < 1e-12
            roots = [
                np.where(small_a, -c / (2.0 * b), (-b + sqrt_disc) / (3.0 * a)),
                np.where(small_a, np.nan, (-b - sqrt_disc) / (3.0 * a)),
            ]
        for t in roots:
            ok = valid & np.isfinite(t) & (t >= 0) & (t <= h)
            if not np.any(ok):
                continue
            value = ((a * t + b) * t + c) * t + d
            better = ok & (value > best_y)
            best_y[better] = value[better]
            best_x[better] = x[kk][better] + t[better]
    return best_x
