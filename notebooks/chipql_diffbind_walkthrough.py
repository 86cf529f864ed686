# %%
"""chipql differential binding walkthrough.

This notebook-style script simulates a small two-group ChIP-seq counts
matrix, then steps through filtering, TMM normalization, dispersion
estimation and the quasi-likelihood F-test, printing the headline numbers
of each stage.  Each section is separated by `# %%` markers so the file can
be opened in Jupyter or run as a plain script.
"""

from __future__ import annotations

from pathlib import Path
import importlib.util
import math
import sys

import matplotlib.pyplot as plt
import pandas as pd

# %%
# Paths and configuration
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
EXAMPLE_DIR = REPO_ROOT / "example"
DATA_DIR = EXAMPLE_DIR / "data"
OUTPUT_DIR = EXAMPLE_DIR / "notebook_results"
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

import chipql
import plots
from dgelist import DGEList, calc_norm_factors, cpm, filter_by_expr
from dispersion import estimate_disp
from io_utils import read_peak_annotation
from ql_test import decide_tests, glm_ql_fit, glm_ql_ftest, make_contrast, make_design, summarize_decisions, top_tags

plt.style.use("seaborn-v0_8")

# %%
# Helper to import the demo generator without turning the directory into a package
def load_make_demo_counts():
    spec = importlib.util.spec_from_file_location("make_demo_counts", EXAMPLE_DIR / "make_demo_counts.py")
    module = importlib.util.module_from_spec(spec)
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module


make_demo_counts = load_make_demo_counts()

# %%
# Simulate the dataset and load it back
paths = make_demo_counts.create_demo_dataset(DATA_DIR)
samples = chipql.load_samples(paths["samples"])
treatment, background = chipql.split_background(samples, "input")
counts = pd.read_csv(paths["counts"], index_col=0)
annotation = read_peak_annotation(paths["annotation"])
print(f"{counts.shape[0]} regions x {counts.shape[1]} libraries; {len(background)} background sample(s) set aside")

# %%
# Container, filtering and normalization
groups = [s.group for s in treatment]
y = DGEList(counts[[s.sample for s in treatment]], groups, genes=annotation)
keep = filter_by_expr(y)
y.subset(keep)
calc_norm_factors(y)
print(f"Regions kept: {y.n_regions}")
print(y.samples)

# %%
# MDS of the normalized log-CPM values
logcpm = cpm(y, log=True)
plots.plot_mds(logcpm, y.group.astype(str), OUTPUT_DIR / "mds.png")

# %%
# Dispersion estimation
design = make_design(groups, levels=["wildtype", "mutant"])
estimate_disp(y, design.to_numpy())
print(f"Common dispersion {y.common_dispersion:.4f}, BCV {math.sqrt(y.common_dispersion):.3f}")
plots.plot_bcv(y, OUTPUT_DIR / "bcv.png")

# %%
# Quasi-likelihood fit and test of mutant - wildtype
fit = glm_ql_fit(y, design)
plots.plot_ql_disp(fit, OUTPUT_DIR / "ql_dispersion.png")
result = glm_ql_ftest(fit, contrast=make_contrast(design, "mutant", "wildtype"))
table = top_tags(result)
print(table.head(10))
print(summarize_decisions(decide_tests(result)))

# %%
# Compare the calls with the planted fold changes
truth = pd.read_csv(paths["truth"], index_col=0)["true_log2FC"]
called = table.index[table["FDR"] < 0.05]
planted = truth.index[truth != 0]
recovered = len(set(called) & set(planted))
print(f"Recovered {recovered} of {len(planted)} planted changes with {len(called)} calls")

# %%
# Result plots, including the interactive HTML versions
plots.plot_md(table, OUTPUT_DIR / "md_plot.png")
plots.plot_volcano(table, OUTPUT_DIR / "volcano.png")
plots.write_interactive_volcano(table, OUTPUT_DIR / "volcano.html")
