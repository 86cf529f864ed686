import importlib.util
from pathlib import Path

import pandas as pd

import chipql
from io_utils import read_counts_table, read_peak_annotation

EXAMPLE_DIR = Path(__file__).resolve().parents[1] / "example"


def _load_demo_module():
    spec = importlib.util.spec_from_file_location("make_demo_counts", EXAMPLE_DIR / "make_demo_counts.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_demo_dataset_feeds_the_diff_command(tmp_path):
    paths = _load_demo_module().create_demo_dataset(tmp_path / "data", n_regions=400, seed=3)

    samples = chipql.load_samples(paths["samples"])
    treatment, background = chipql.split_background(samples)
    assert [s.sample for s in background] == ["input_1"]
    counts = read_counts_table(paths["counts"])
    annotation = read_peak_annotation(paths["annotation"])
    assert counts.index.equals(annotation.index)
    assert chipql.match_sample_columns(counts, treatment).shape == (400, 6)

    output_dir = tmp_path / "results"
    chipql.main([
        "diff",
        "--config", str(EXAMPLE_DIR / "demo_manifest.txt"),
        "--samples", str(paths["samples"]),
        "--counts", str(paths["counts"]),
        "--peaks", str(paths["annotation"]),
        "--output-dir", str(output_dir),
        "--no-plots",
    ])
    table = pd.read_csv(output_dir / "differential_results.csv", index_col=0)
    assert table.index.name == "PeakID"
    assert "Gene Name" in table.columns
