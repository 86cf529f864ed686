"""Shared IO utilities for chipql."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, MutableMapping, Sequence

import pandas as pd

LOGGER = logging.getLogger(__name__)

BED_COLUMNS: tuple[str, str, str] = ("Chromosome", "Start", "End")
PEAK_COLUMNS: tuple[str, ...] = ("Chromosome", "Start", "End", "Strand")
HOMER_COORDINATE_COLUMNS = {"Chr": "Chromosome", "Start": "Start", "End": "End", "Strand": "Strand"}


def _resolve_path(path: Path | str) -> Path:
    if isinstance(path, Path):
        return path
    return Path(path)


def read_bed_frame(
    path: Path | str,
    *,
    column_names: Sequence[str] = BED_COLUMNS,
    min_columns: int | None = None,
    comment: str = "#",
    dtype: Mapping[int, object] | None = None,
) -> pd.DataFrame:
    """Load a BED-like table into a :class:`pandas.DataFrame`.

    Parameters
    ----------
    path:
        Location of the file to read.
    column_names:
        Names to assign to the first ``len(column_names)`` columns.
    min_columns:
        Minimum number of columns that must be present. Defaults to the
        number of ``column_names``.
    comment:
        Comment indicator passed to :func:`pandas.read_csv`.
    dtype:
        Optional dtype overrides for individual columns.
    """

    target = _resolve_path(path)
    required = len(column_names) if min_columns is None else min_columns
    overrides: MutableMapping[int, object] = {0: str}
    if dtype:
        overrides.update(dtype)

    try:
        frame = pd.read_csv(
            target,
            sep="\t",
            comment=comment,
            header=None,
            dtype=overrides,
        )
    except Exception as exc:  # pragma: no cover - surface informative error
        raise RuntimeError(f"Failed to read BED-like file {target}: {exc}") from exc

    if frame.shape[1] < required:
        raise ValueError(
            f"BED-like file {target} must have at least {required} columns;"
            f" found {frame.shape[1]}"
        )

    names = list(column_names)[: frame.shape[1]]
    base = frame.iloc[:, : len(names)].copy()
    base.columns = names
    return base


def ensure_integer_columns(frame: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """Return a copy of ``frame`` with specified columns coerced to integers."""

    result = frame.copy()
    for column in columns:
        result[column] = pd.to_numeric(result[column], errors="raise").astype(int)
    return result


def read_table(path: Path | str) -> pd.DataFrame:
    """Read a delimited table inferring delimiter automatically."""

    target = _resolve_path(path)
    if not target.exists():
        raise FileNotFoundError(f"Table not found: {target}")
    try:
        df = pd.read_csv(target, sep=None, engine="python")
    except Exception as exc:  # pragma: no cover - passthrough error
        raise RuntimeError(f"Failed to read table {target}: {exc}") from exc
    df.columns = [str(col).strip() for col in df.columns]
    return df


def _unique_ids(ids: pd.Series, source: Path) -> pd.Index:
    index = pd.Index(ids.astype(str).str.strip(), name="PeakID")
    duplicated = index[index.duplicated()]
    if len(duplicated):
        raise ValueError(f"Duplicate peak identifiers in {source}: {', '.join(duplicated[:5])}")
    return index


def read_peak_annotation(path: Path | str) -> pd.DataFrame:
    """Load annotated peak regions indexed by peak identifier.

    Accepts HOMER ``annotatePeaks.pl`` output (1-based starts, first header
    column beginning with ``PeakID``) or a BED file.  ``Start`` is returned
    0-based half-open in both cases.
    """

    target = _resolve_path(path)
    if not target.exists():
        raise FileNotFoundError(f"Peak annotation file not found: {target}")

    with target.open() as handle:
        first = handle.readline()

    if first.startswith("PeakID") or first.split("\t", 1)[0].startswith("PeakID"):
        frame = pd.read_csv(target, sep="\t", dtype={1: str})
        id_column = frame.columns[0]
        missing = [col for col in HOMER_COORDINATE_COLUMNS if col not in frame.columns]
        if missing:
            raise ValueError(f"Peak annotation {target} missing columns: {', '.join(missing)}")
        frame = frame.rename(columns=HOMER_COORDINATE_COLUMNS)
        frame.index = _unique_ids(frame[id_column], target)
        frame = frame.drop(columns=[id_column])
        frame = ensure_integer_columns(frame, ("Start", "End"))
        frame["Start"] = frame["Start"] - 1
    else:
        frame = read_bed_frame(
            target,
            column_names=("Chromosome", "Start", "End", "Name", "Score", "Strand"),
            min_columns=3,
        )
        frame = ensure_integer_columns(frame, ("Start", "End"))
        if "Name" in frame.columns:
            ids = frame.pop("Name")
        else:
            ids = frame["Chromosome"] + ":" + frame["Start"].astype(str) + "-" + frame["End"].astype(str)
        frame.index = _unique_ids(ids, target)
        frame = frame.drop(columns=[col for col in ("Score",) if col in frame.columns])

    if "Strand" not in frame.columns:
        frame["Strand"] = "+"
    frame["Strand"] = frame["Strand"].fillna("+").astype(str).replace({"0": "+", "1": "-"})
    frame["Chromosome"] = frame["Chromosome"].astype(str)

    if (frame["End"] <= frame["Start"]).any():
        bad = frame.index[frame["End"] <= frame["Start"]][0]
        raise ValueError(f"Peak {bad} in {target} has a non-positive width")

    ordered = list(PEAK_COLUMNS) + [col for col in frame.columns if col not in PEAK_COLUMNS]
    return frame[ordered]


def read_homer_peaks(path: Path | str) -> pd.DataFrame:
    """Parse HOMER ``findPeaks`` output into a 0-based peak frame."""

    target = _resolve_path(path)
    if not target.exists():
        raise FileNotFoundError(f"HOMER peak file not found: {target}")
    frame = pd.read_csv(target, sep="\t", comment="#", header=None, dtype={0: str, 1: str})
    if frame.shape[1] < 5:
        raise ValueError(f"HOMER peak file {target} must have at least five columns")
    peaks = frame.iloc[:, :5].copy()
    peaks.columns = ["Name", "Chromosome", "Start", "End", "Strand"]
    peaks = ensure_integer_columns(peaks, ("Start", "End"))
    peaks["Start"] = peaks["Start"] - 1
    return peaks


def write_saf(peaks: pd.DataFrame, path: Path | str) -> Path:
    """Write peaks as SAF (1-based inclusive) for featureCounts."""

    target = _resolve_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    saf = pd.DataFrame(
        {
            "GeneID": peaks.index.astype(str),
            "Chr": peaks["Chromosome"].astype(str).to_numpy(),
            "Start": (peaks["Start"].astype(int) + 1).to_numpy(),
            "End": peaks["End"].astype(int).to_numpy(),
            "Strand": peaks.get("Strand", pd.Series("+", index=peaks.index)).astype(str).to_numpy(),
        }
    )
    saf.to_csv(target, sep="\t", index=False)
    return target


def read_featurecounts(path: Path | str) -> pd.DataFrame:
    """Read a featureCounts table; returns counts indexed by ``Geneid``.

    Sample columns keep the BAM paths featureCounts reports.
    """

    target = _resolve_path(path)
    if not target.exists():
        raise FileNotFoundError(f"featureCounts table not found: {target}")
    frame = pd.read_csv(target, sep="\t", comment="#", dtype={"Geneid": str})
    required = ["Geneid", "Chr", "Start", "End", "Strand", "Length"]
    missing = [col for col in required if col not in frame.columns]
    if missing:
        raise ValueError(f"featureCounts table {target} missing columns: {', '.join(missing)}")
    counts = frame.set_index("Geneid").drop(columns=required[1:])
    counts.index.name = "PeakID"
    if counts.empty or counts.shape[1] == 0:
        raise ValueError(f"featureCounts table {target} has no sample columns")
    return counts


def read_counts_table(path: Path | str) -> pd.DataFrame:
    """Read a regions x samples counts matrix; the first column holds region ids."""

    target = _resolve_path(path)
    if not target.exists():
        raise FileNotFoundError(f"Counts table not found: {target}")
    with target.open() as handle:
        first = handle.readline()
    if first.startswith("# Program:featureCounts"):
        return read_featurecounts(target)
    sep = "\t" if "\t" in first else ","
    frame = pd.read_csv(target, sep=sep, index_col=0)
    frame.index = frame.index.astype(str)
    frame.index.name = "PeakID"
    return frame
