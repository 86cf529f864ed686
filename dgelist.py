"""Counts-and-metadata container with filtering and library normalization."""
from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from nbglm import add_prior_count, fit_one_group

LOGGER = logging.getLogger(__name__)

NORM_METHODS = ("TMM", "RLE", "upperquartile", "none")


class DGEList:
    """Regions x samples count matrix bundled with sample and region tables.

    Pipeline stages mutate the container in place: :meth:`subset` drops
    regions, :func:`calc_norm_factors` fills ``samples["norm_factors"]`` and
    dispersion estimation attaches the ``*_dispersion`` attributes.
    """

    def __init__(
        self,
        counts: pd.DataFrame,
        group: Optional[Sequence[str]] = None,
        *,
        genes: Optional[pd.DataFrame] = None,
        lib_size: Optional[Sequence[float]] = None,
        norm_factors: Optional[Sequence[float]] = None,
    ) -> None:
        if not isinstance(counts, pd.DataFrame):
            counts = pd.DataFrame(counts)
        if counts.isna().any().any():
            raise ValueError("Counts matrix contains missing values")
        values = counts.to_numpy(dtype=float)
        if np.any(values < 0):
            raise ValueError("Counts matrix contains negative values")
        if not np.all(np.isfinite(values)):
            raise ValueError("Counts matrix contains non-finite values")
        if np.any(np.abs(values - np.round(values)) > 1e-8):
            raise ValueError("Counts matrix must contain integer counts")
        if counts.columns.duplicated().any():
            raise ValueError("Sample names in the counts matrix must be unique")
        if counts.index.duplicated().any():
            raise ValueError("Region identifiers in the counts matrix must be unique")

        self.counts = counts.astype(np.int64)
        self.counts.index = self.counts.index.astype(str)
        samples = [str(col) for col in counts.columns]
        self.counts.columns = samples

        if group is None:
            group = ["1"] * len(samples)
        group = [str(value) for value in group]
        if len(group) != len(samples):
            raise ValueError("group must have one entry per sample")

        sizes = self.counts.sum(axis=0).astype(float) if lib_size is None else pd.Series(
            np.asarray(lib_size, dtype=float), index=samples
        )
        factors = np.ones(len(samples)) if norm_factors is None else np.asarray(norm_factors, dtype=float)

        self.samples = pd.DataFrame(
            {
                "group": pd.Categorical(group, categories=list(dict.fromkeys(group))),
                "lib_size": sizes.to_numpy(dtype=float),
                "norm_factors": factors,
            },
            index=samples,
        )

        if genes is not None:
            genes = genes.copy()
            genes.index = genes.index.astype(str)
            missing = self.counts.index.difference(genes.index)
            if len(missing):
                raise ValueError(
                    f"Region annotation missing {len(missing)} region(s), e.g. {missing[0]}"
                )
            genes = genes.loc[self.counts.index]
        self.genes = genes

        self.common_dispersion: Optional[float] = None
        self.trended_dispersion: Optional[np.ndarray] = None
        self.tagwise_dispersion: Optional[np.ndarray] = None
        self.ave_log_cpm: Optional[np.ndarray] = None
        self.prior_df: Optional[float] = None
        self.span: Optional[float] = None

    def __repr__(self) -> str:
        return f"DGEList({self.n_regions} regions x {self.n_samples} samples)"

    @property
    def n_regions(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def group(self) -> pd.Series:
        return self.samples["group"]

    @property
    def effective_lib_sizes(self) -> np.ndarray:
        return (self.samples["lib_size"] * self.samples["norm_factors"]).to_numpy(dtype=float)

    def get_offset(self) -> np.ndarray:
        return np.log(self.effective_lib_sizes)

    def subset(self, keep, *, keep_lib_sizes: bool = False) -> "DGEList":
        """Keep only the regions selected by ``keep`` (boolean mask or labels)."""

        keep_arr = np.asarray(keep)
        if keep_arr.dtype == bool:
            if keep_arr.size != self.n_regions:
                raise ValueError("Boolean mask length does not match the number of regions")
            mask = keep_arr
        else:
            mask = self.counts.index.isin(pd.Index(keep_arr).astype(str))

        self.counts = self.counts.loc[mask]
        if self.genes is not None:
            self.genes = self.genes.loc[mask]
        for attr in ("trended_dispersion", "tagwise_dispersion", "ave_log_cpm"):
            value = getattr(self, attr)
            if value is not None:
                setattr(self, attr, np.asarray(value)[mask])
        if not keep_lib_sizes:
            self.samples["lib_size"] = self.counts.sum(axis=0).to_numpy(dtype=float)
        return self


def cpm(
    y: DGEList,
    *,
    normalized: bool = True,
    log: bool = False,
    prior_count: float = 2.0,
) -> pd.DataFrame:
    """Counts per million, optionally on the log2 scale with a prior count."""

    lib = y.effective_lib_sizes if normalized else y.samples["lib_size"].to_numpy(dtype=float)
    counts = y.counts.to_numpy(dtype=float)
    if log:
        shifted, offset = add_prior_count(counts, np.log(lib), prior_count)
        values = np.log2(shifted / np.exp(offset) * 1e6)
    else:
        values = counts / lib * 1e6
    return pd.DataFrame(values, index=y.counts.index, columns=y.counts.columns)


def filter_by_expr(
    y: DGEList,
    group: Optional[Sequence[str]] = None,
    *,
    design: Optional[np.ndarray] = None,
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: int = 10,
    min_prop: float = 0.7,
) -> pd.Series:
    """Flag regions with enough reads to be worth testing.

    A region is kept when its CPM reaches the CPM equivalent of
    ``min_count`` (at the median library size) in at least ``n`` samples and
    its total count reaches ``min_total_count``.  ``n`` is the smallest group
    size, or the residual degrees of freedom when only a design is supplied.
    """

    lib = y.effective_lib_sizes
    if group is None and design is None:
        group = y.group.astype(str).tolist()

    if group is not None:
        sizes = pd.Series(list(group)).value_counts()
        sizes = sizes[sizes > 0]
        n = float(sizes.min())
    elif design is not None:
        design = np.asarray(design, dtype=float)
        n = float(y.n_samples - np.linalg.matrix_rank(design))
    else:
        n = float(y.n_samples)
    if n > large_n:
        n = large_n + (n - large_n) * min_prop

    median_lib = float(np.median(lib))
    cpm_cutoff = min_count / median_lib * 1e6
    values = y.counts.to_numpy(dtype=float) / lib * 1e6
    tol = 1e-14
    keep_cpm = (values >= cpm_cutoff).sum(axis=1) >= (n - tol)
    keep_total = y.counts.to_numpy(dtype=float).sum(axis=1) >= (min_total_count - tol)
    keep = keep_cpm & keep_total
    LOGGER.info(
        "filter_by_expr: CPM cutoff %.3f in >= %.1f samples; keeping %d of %d regions",
        cpm_cutoff,
        n,
        int(keep.sum()),
        y.n_regions,
    )
    return pd.Series(keep, index=y.counts.index, name="keep")


def _factor_quantile(counts: np.ndarray, lib_size: np.ndarray, p: float) -> np.ndarray:
    quantiles = np.quantile(counts, p, axis=0)
    if np.any(quantiles == 0):
        LOGGER.warning("One or more quantiles are zero")
    return quantiles / lib_size


def _factor_rle(counts: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore"):
        geo_means = np.exp(np.log(counts).mean(axis=1))
    positive = geo_means > 0
    ratios = counts[positive] / geo_means[positive, None]
    return np.median(ratios, axis=0)


def _factor_tmm(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    *,
    logratio_trim: float,
    sum_trim: float,
    do_weighting: bool,
    a_cutoff: float,
) -> float:
    obs = obs.astype(float)
    ref = ref.astype(float)
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2.0
        var = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, var = log_r[fin], abs_e[fin], var[fin]
    if log_r.size == 0:
        return 1.0
    if np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = math.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = math.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = stats.rankdata(log_r)
    rank_e = stats.rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    if do_weighting:
        f = np.nansum(log_r[keep] / var[keep]) / np.nansum(1.0 / var[keep])
    else:
        f = np.nanmean(log_r[keep]) if np.any(keep) else np.nan
    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def calc_norm_factors(
    y: DGEList,
    method: str = "TMM",
    *,
    ref_column: Optional[int] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
    p: float = 0.75,
) -> DGEList:
    """Attach library scaling factors to ``y.samples["norm_factors"]``.

    TMM compares each library against a reference library (the one whose
    upper-quartile factor is closest to the mean), trimming the extreme
    log-ratios and abundances before a precision-weighted mean.  Factors are
    rescaled to have a geometric mean of one.
    """

    if method not in NORM_METHODS:
        raise ValueError(f"Unknown normalization method '{method}'; choose from {', '.join(NORM_METHODS)}")

    x = y.counts.to_numpy(dtype=float)
    lib_size = y.samples["lib_size"].to_numpy(dtype=float)
    n_samples = x.shape[1]

    all_zero = (x > 0).sum(axis=1) == 0
    if np.any(all_zero):
        x = x[~all_zero]
    if x.shape[0] == 0 or n_samples == 1:
        method = "none"

    if method == "TMM":
        if ref_column is None:
            f75 = _factor_quantile(x, lib_size, 0.75)
            if np.median(f75) < 1e-20:
                ref_column = int(np.argmax(np.sqrt(x).sum(axis=0)))
            else:
                ref_column = int(np.argmin(np.abs(f75 - f75.mean())))
        factors = np.array(
            [
                _factor_tmm(
                    x[:, i],
                    x[:, ref_column],
                    lib_size[i],
                    lib_size[ref_column],
                    logratio_trim=logratio_trim,
                    sum_trim=sum_trim,
                    do_weighting=do_weighting,
                    a_cutoff=a_cutoff,
                )
                for i in range(n_samples)
            ]
        )
    elif method == "RLE":
        factors = _factor_rle(x) / lib_size
    elif method == "upperquartile":
        factors = _factor_quantile(x, lib_size, p)
    else:
        factors = np.ones(n_samples)

    factors = factors / np.exp(np.mean(np.log(factors)))
    y.samples["norm_factors"] = factors
    LOGGER.info(
        "calc_norm_factors (%s): factors range %.3f to %.3f",
        method,
        float(factors.min()),
        float(factors.max()),
    )
    return y


def ave_log_cpm(
    y: DGEList,
    *,
    prior_count: float = 2.0,
    dispersion: Optional[float] = None,
) -> np.ndarray:
    """Average log2 CPM of each region under a one-group NB model."""

    if dispersion is None:
        dispersion = 0.05
    lib = y.effective_lib_sizes
    shifted, offset = add_prior_count(y.counts.to_numpy(dtype=float), np.log(lib), prior_count)
    abundance = fit_one_group(shifted, offset, dispersion)
    return (abundance + math.log(1e6)) / math.log(2.0)
