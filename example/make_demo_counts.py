#!/usr/bin/env python3
"""Generate a synthetic differential binding dataset for chipql.

The script writes a sample sheet, a counts matrix and a HOMER-style peak
annotation for three ``mutant`` and three ``wildtype`` libraries (plus an
``input`` background that is excluded from testing).  Counts are negative
binomial with a BCV of about 0.25; a fraction of the regions carry a planted
fold change so ``chipql diff`` has something to find.

Running this script repeatedly will overwrite the existing demo files.
"""
from __future__ import annotations

import argparse
from pathlib import Path
from typing import Dict

import numpy as np
import pandas as pd

GROUPS = {"mutant": 3, "wildtype": 3}
ANNOTATIONS = ("promoter-TSS", "intron", "Intergenic", "exon", "TTS")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--output",
        default=Path(__file__).resolve().parent / "data",
        type=Path,
        help="Directory where the demo tables will be written",
    )
    parser.add_argument("--regions", type=int, default=3000, help="Number of peak regions")
    parser.add_argument("--bcv", type=float, default=0.25, help="Biological coefficient of variation")
    parser.add_argument("--seed", type=int, default=7, help="Random seed")
    return parser.parse_args()


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def simulate_counts(n_regions: int, bcv: float, rng: np.random.Generator) -> Dict[str, object]:
    """Negative binomial counts with 10% of regions shifted up or down."""

    base = np.exp(rng.normal(4.0, 1.3, n_regions))
    log2fc = np.zeros(n_regions)
    changed = rng.choice(n_regions, size=n_regions // 10, replace=False)
    log2fc[changed] = rng.choice([-1.5, 1.5], size=changed.size, p=[0.3, 0.7])

    dispersion = bcv ** 2
    columns = {}
    groups = []
    for group, n_reps in GROUPS.items():
        shift = 2.0 ** log2fc if group == "mutant" else np.ones(n_regions)
        for rep in range(1, n_reps + 1):
            lib_scale = rng.uniform(0.7, 1.4)
            mu = base * shift * lib_scale
            # NB as a gamma-Poisson mixture
            lam = rng.gamma(shape=1.0 / dispersion, scale=mu * dispersion)
            columns[f"{group}_{rep}"] = rng.poisson(lam)
            groups.append(group)
    ids = [f"peak_{i + 1}" for i in range(n_regions)]
    counts = pd.DataFrame(columns, index=pd.Index(ids, name="PeakID"))
    truth = pd.Series(log2fc, index=counts.index, name="true_log2FC")
    return {"counts": counts, "groups": groups, "truth": truth}


def homer_annotation(ids: pd.Index, rng: np.random.Generator) -> pd.DataFrame:
    n = len(ids)
    chroms = rng.choice([f"chr{i}" for i in range(1, 6)], size=n)
    starts = np.sort(rng.integers(10_000, 50_000_000, size=n))
    widths = rng.integers(200, 1500, size=n)
    frame = pd.DataFrame(
        {
            "PeakID (cmd=annotatePeaks.pl consensus_peaks.bed hg38)": ids,
            "Chr": chroms,
            "Start": starts + 1,
            "End": starts + widths,
            "Strand": "+",
            "Peak Score": rng.integers(2, 6, size=n),
            "Focus Ratio/Region Size": "NA",
            "Annotation": rng.choice(ANNOTATIONS, size=n),
            "Distance to TSS": rng.integers(-50_000, 50_000, size=n),
            "Gene Name": [f"GENE{i % 997 + 1}" for i in range(n)],
        }
    )
    return frame


def create_demo_dataset(output: Path, *, n_regions: int = 3000, bcv: float = 0.25, seed: int = 7) -> Dict[str, Path]:
    ensure_dir(output)
    rng = np.random.default_rng(seed=seed)
    simulated = simulate_counts(n_regions, bcv, rng)
    counts: pd.DataFrame = simulated["counts"]

    paths = {
        "counts": output / "demo_counts.csv",
        "samples": output / "demo_samples.tsv",
        "annotation": output / "demo_annotation.txt",
        "truth": output / "demo_truth.csv",
    }
    counts.to_csv(paths["counts"])
    sheet = pd.DataFrame(
        {
            "sample": list(counts.columns) + ["input_1"],
            "group": list(simulated["groups"]) + ["input"],
            "file": [f"bam/{name}.bam" for name in counts.columns] + ["bam/input_1.bam"],
        }
    )
    sheet.to_csv(paths["samples"], sep="\t", index=False)
    homer_annotation(counts.index, rng).to_csv(paths["annotation"], sep="\t", index=False)
    simulated["truth"].to_csv(paths["truth"])
    return paths


def main() -> None:
    args = parse_args()
    paths = create_demo_dataset(args.output, n_regions=args.regions, bcv=args.bcv, seed=args.seed)
    for label, path in paths.items():
        print(f"{label}: {path}")


if __name__ == "__main__":
    main()
