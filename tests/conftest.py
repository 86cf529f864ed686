"""Pytest fixtures and simulated count data."""

import os

os.environ.setdefault("MPLBACKEND", "Agg")

import numpy as np
import pandas as pd
import pytest


def simulate_nb_counts(n_regions=400, n_per_group=3, dispersion=0.1, de_fraction=0.0, log2fc=2.0,
                       mean_log=5.0, seed=1):
    """Two-group negative binomial counts with optional planted changes."""
    rng = np.random.default_rng(seed)
    base = np.exp(rng.normal(mean_log, 0.8, n_regions))
    truth = np.zeros(n_regions)
    n_de = int(round(de_fraction * n_regions))
    truth[:n_de] = np.where(np.arange(n_de) % 2 == 0, log2fc, -log2fc)

    columns = {}
    groups = []
    for group in ("wildtype", "mutant"):
        shift = 2.0 ** truth if group == "mutant" else np.ones(n_regions)
        for rep in range(1, n_per_group + 1):
            mu = base * shift * rng.uniform(0.8, 1.25)
            lam = rng.gamma(shape=1.0 / dispersion, scale=mu * dispersion)
            columns[f"{group}_{rep}"] = rng.poisson(lam)
            groups.append(group)
    index = pd.Index([f"peak_{i + 1}" for i in range(n_regions)], name="PeakID")
    counts = pd.DataFrame(columns, index=index)
    return counts, groups, pd.Series(truth, index=index, name="true_log2FC")


@pytest.fixture
def null_counts():
    return simulate_nb_counts(n_regions=500, dispersion=0.1, seed=11)


@pytest.fixture
def de_counts():
    return simulate_nb_counts(n_regions=600, dispersion=0.05, de_fraction=0.1, log2fc=2.0, seed=5)


def write_homer_annotation(path, ids, chroms=None, starts=None, width=500):
    n = len(ids)
    chroms = chroms if chroms is not None else ["chr1"] * n
    starts = starts if starts is not None else [1000 * (i + 1) for i in range(n)]
    frame = pd.DataFrame({
        "PeakID (cmd=annotatePeaks.pl consensus_peaks.bed hg38)": list(ids),
        "Chr": chroms,
        "Start": [s + 1 for s in starts],
        "End": [s + width for s in starts],
        "Strand": "+",
        "Peak Score": 3,
        "Annotation": "Intergenic",
        "Distance to TSS": 100,
        "Gene Name": [f"GENE{i}" for i in range(n)],
    })
    frame.to_csv(path, sep="\t", index=False)
    return path
