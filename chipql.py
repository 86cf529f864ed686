#!/usr/bin/env python3
"""chipql.py

ChIP-seq differential binding with negative binomial quasi-likelihood tests.

The sample sheet is a tab- or comma-delimited file with the columns:

    sample    Unique sample identifier
    group     Group label; the background group (default ``input``) is used
              only as the peak-calling control
    file      FASTQ (aligned with bowtie2) or BAM path

Optional columns:

    bam       Aligned BAM path (filled in by the ``align`` step)
    mate      Second FASTQ of a paired-end library

Example TSV sample sheet::

    sample    group     file
    H3K27_1   mutant    fastq/mut_1.fastq.gz
    H3K27_2   mutant    fastq/mut_2.fastq.gz
    WT_1      wildtype  fastq/wt_1.fastq.gz
    WT_2      wildtype  fastq/wt_2.fastq.gz
    INPUT     input     fastq/input.fastq.gz

The stages run in sequence:

1. Alignment with bowtie2, coordinate sorting and duplicate marking with
   samtools (``align``).
2. HOMER tag directories, ``findPeaks`` against the background, a consensus
   peak set and ``annotatePeaks.pl`` annotation (``peaks``).
3. Read counting over the consensus peaks with featureCounts (``count``).
4. Low-count filtering, TMM normalization, dispersion estimation and a
   quasi-likelihood F-test between the two groups (``diff``).
5. Result tables, diagnostic plots and run metadata.

``run`` chains all of the above.  Every subcommand accepts ``--config`` with a
JSON or ``key=value`` manifest whose entries become option defaults.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import shlex
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import pyranges as pr

from checkpoints import CheckpointRegistry, load_manifest
from dgelist import NORM_METHODS, DGEList, calc_norm_factors, cpm, filter_by_expr
from dispersion import estimate_disp
from external_tools import (
    align_fastq,
    annotate_peaks,
    build_bowtie2_index,
    detect_paired_end_bam,
    ensure_commands,
    ensure_directory,
    find_peaks,
    index_bam,
    make_tag_directory,
    mark_duplicates,
    run_featurecounts,
)
from io_utils import (
    read_counts_table,
    read_featurecounts,
    read_homer_peaks,
    read_peak_annotation,
    read_table,
    write_saf,
)
import plots
from ql_test import (
    QLFit,
    QLTestResult,
    decide_tests,
    glm_ql_fit,
    glm_ql_ftest,
    make_contrast,
    make_design,
    summarize_decisions,
    top_tags,
)

BAM_SUFFIXES = (".bam",)
MISSING_VALUES = {"", "-", "NA", "None", "none", "nan"}


# ---------------------------------------------------------------------------
# Sample sheet
# ---------------------------------------------------------------------------


@dataclass
class SampleEntry:
    """Representation of a single sample entry from the sample sheet."""

    sample: str
    group: str
    file: Optional[Path] = None
    bam: Optional[Path] = None
    mate: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.bam is None and self.file is not None and self.file.name.lower().endswith(BAM_SUFFIXES):
            self.bam = self.file

    def ensure_paths(self, *, require_bam: bool = False) -> None:
        if require_bam:
            if self.bam is None:
                raise ValueError(f"Sample {self.sample} has no BAM file; run the align step first")
            if not self.bam.exists():
                raise FileNotFoundError(f"BAM file not found for sample {self.sample}: {self.bam}")
            return
        for path in (self.file, self.mate):
            if path is not None and not path.exists():
                raise FileNotFoundError(f"Input file not found for sample {self.sample}: {path}")


def ensure_python_version(min_version: tuple[int, int] = (3, 10)) -> None:
    """Guard against unsupported Python interpreters."""

    if sys.version_info < min_version:
        formatted = ".".join(str(part) for part in min_version)
        raise RuntimeError(
            f"chipql requires Python {formatted} or newer; detected {sys.version.split()[0]}"
        )


def _normalise_optional_path(value: object, base: Optional[Path] = None) -> Optional[Path]:
    if isinstance(value, Path):
        path = value
    elif isinstance(value, str) and value.strip() not in MISSING_VALUES:
        path = Path(value.strip()).expanduser()
    else:
        return None
    if base is not None and not path.is_absolute():
        path = base / path
    return path


def load_samples(metadata_path: Path) -> List[SampleEntry]:
    df = read_table(metadata_path)
    required = {"sample", "group"}
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"Sample sheet missing required columns: {', '.join(sorted(missing))}")
    if "file" not in df.columns and "bam" not in df.columns:
        raise ValueError("Sample sheet needs a 'file' or 'bam' column")

    names = df["sample"].astype(str).str.strip()
    duplicated = names[names.duplicated()].unique().tolist()
    if duplicated:
        raise ValueError(f"Duplicate sample names in sample sheet: {', '.join(duplicated)}")

    base = metadata_path.parent
    entries: List[SampleEntry] = []
    for row in df.itertuples(index=False):
        entries.append(
            SampleEntry(
                sample=str(getattr(row, "sample")).strip(),
                group=str(getattr(row, "group")).strip(),
                file=_normalise_optional_path(getattr(row, "file", None), base),
                bam=_normalise_optional_path(getattr(row, "bam", None), base),
                mate=_normalise_optional_path(getattr(row, "mate", None), base),
            )
        )
    if not entries:
        raise ValueError(f"Sample sheet {metadata_path} lists no samples")
    return entries


def write_samples(samples: Sequence[SampleEntry], path: Path) -> Path:
    """Write a sample sheet that ``load_samples`` reads back unchanged.

    Paths are stored relative to the sheet's directory because
    ``load_samples`` resolves relative entries against it.
    """

    ensure_directory(path.parent)

    def relative(value: Optional[Path]) -> str:
        return os.path.relpath(value, path.parent) if value else "-"

    frame = pd.DataFrame(
        {
            "sample": [s.sample for s in samples],
            "group": [s.group for s in samples],
            "file": [relative(s.file) for s in samples],
            "bam": [relative(s.bam) for s in samples],
            "mate": [relative(s.mate) for s in samples],
        }
    )
    frame.to_csv(path, sep="\t", index=False)
    return path


def split_background(
    samples: Sequence[SampleEntry], background_group: str = "input"
) -> Tuple[List[SampleEntry], List[SampleEntry]]:
    """Separate background samples from the two comparison groups."""

    treatment = [s for s in samples if s.group != background_group]
    background = [s for s in samples if s.group == background_group]
    groups = list(dict.fromkeys(s.group for s in treatment))
    if len(groups) != 2:
        raise ValueError(
            f"Expected exactly two comparison groups besides '{background_group}', found"
            f" {len(groups)}: {', '.join(groups) or 'none'}"
        )
    return treatment, background


def resolve_groups(
    samples: Sequence[SampleEntry],
    reference: Optional[str] = None,
    test: Optional[str] = None,
) -> Tuple[str, str]:
    """Reference and test groups; defaults follow sample-sheet order."""

    groups = list(dict.fromkeys(s.group for s in samples))
    if len(groups) != 2:
        raise ValueError(f"Differential testing needs exactly two groups, found {len(groups)}")
    for label in (reference, test):
        if label is not None and label not in groups:
            raise ValueError(f"Group '{label}' not found in sample sheet ({', '.join(groups)})")
    if reference is None:
        reference = groups[0] if test != groups[0] else groups[1]
    if test is None:
        test = next(g for g in groups if g != reference)
    if reference == test:
        raise ValueError("Reference and test groups must differ")
    return reference, test


# ---------------------------------------------------------------------------
# Alignment, peaks and counting
# ---------------------------------------------------------------------------


def align_samples(
    samples: Sequence[SampleEntry],
    *,
    output_dir: Path,
    genome_fasta: Optional[Path] = None,
    index_prefix: Optional[Path] = None,
    threads: int = 1,
    remove_duplicates: bool = False,
) -> List[SampleEntry]:
    """Align FASTQ samples and mark duplicates; BAM samples are indexed only."""

    to_align = [s for s in samples if s.bam is None]
    required = ["samtools"]
    if to_align:
        required.append("bowtie2")
        if genome_fasta is not None:
            required.append("bowtie2-build")
    ensure_commands(required)
    if to_align:
        if index_prefix is None:
            if genome_fasta is None:
                raise ValueError("A genome FASTA or bowtie2 index prefix is required to align FASTQ files")
            index_prefix = output_dir / "index" / genome_fasta.name.split(".")[0]
        if genome_fasta is not None:
            build_bowtie2_index(genome_fasta, index_prefix, threads)

    bam_dir = ensure_directory(output_dir / "bam")
    for sample in samples:
        if sample.bam is None:
            sample.ensure_paths()
            if sample.file is None:
                raise ValueError(f"Sample {sample.sample} has neither a FASTQ nor a BAM file")
            logging.info("Aligning sample %s", sample.sample)
            sorted_bam = align_fastq(
                sample.file,
                index_prefix,
                bam_dir / f"{sample.sample}.sorted.bam",
                fastq_mate=sample.mate,
                threads=threads,
            )
            sample.bam = mark_duplicates(
                sorted_bam, bam_dir / f"{sample.sample}.bam", threads=threads, remove=remove_duplicates
            )
            sorted_bam.unlink(missing_ok=True)
        sample.ensure_paths(require_bam=True)
        index_bam(sample.bam, threads)
    return list(samples)


def warn_overlapping_peaks(peaks: pd.DataFrame) -> int:
    """Log a warning when peak intervals overlap; returns the overlap count."""

    ordered = peaks.sort_values(["Chromosome", "Start", "End"])
    previous_end = ordered.groupby("Chromosome")["End"].cummax().groupby(ordered["Chromosome"]).shift()
    overlapping = int((ordered["Start"] < previous_end).sum())
    if overlapping:
        logging.warning("%d peak region(s) overlap a preceding region", overlapping)
    return overlapping


def build_consensus(peak_files: Mapping[str, Path], *, min_overlap: int) -> pd.DataFrame:
    """Merge per-sample peaks into consensus regions supported by ``min_overlap`` samples."""

    logging.info("Building consensus peaks across %d samples", len(peak_files))
    frames = []
    for sample, path in peak_files.items():
        peaks = read_homer_peaks(path)
        peaks["Sample"] = sample
        frames.append(peaks[["Chromosome", "Start", "End", "Sample"]])
    if not frames:
        raise ValueError("No peak files supplied for the consensus")
    combined = pr.PyRanges(pd.concat(frames, ignore_index=True))
    df = combined.cluster().df

    grouped = (
        df.groupby("Cluster")
        .agg(
            Chromosome=("Chromosome", "first"),
            Start=("Start", "min"),
            End=("End", "max"),
            Support=("Sample", pd.Series.nunique),
        )
        .reset_index(drop=True)
    )
    consensus = grouped[grouped["Support"] >= max(1, min_overlap)].copy()
    consensus["Chromosome"] = consensus["Chromosome"].astype(str)
    consensus.sort_values(["Chromosome", "Start", "End"], inplace=True)
    consensus.index = pd.Index([f"consensus_{i + 1}" for i in range(len(consensus))], name="PeakID")
    consensus["Strand"] = "+"
    if consensus.empty:
        raise ValueError("Consensus peak set is empty; lower --min-overlap or check the peak calls")
    logging.info("Consensus peak set has %d regions (min overlap %d)", len(consensus), min_overlap)
    return consensus[["Chromosome", "Start", "End", "Strand", "Support"]]


def write_consensus_bed(consensus: pd.DataFrame, path: Path) -> Path:
    ensure_directory(path.parent)
    bed = pd.DataFrame(
        {
            "Chromosome": consensus["Chromosome"],
            "Start": consensus["Start"],
            "End": consensus["End"],
            "Name": consensus.index,
            "Score": consensus.get("Support", pd.Series(0, index=consensus.index)),
            "Strand": consensus["Strand"],
        }
    )
    bed.to_csv(path, sep="\t", header=False, index=False)
    return path


def call_peaks(
    samples: Sequence[SampleEntry],
    *,
    output_dir: Path,
    genome: str,
    background_group: str = "input",
    min_overlap: int = 2,
    style: str = "factor",
    gtf: Optional[Path] = None,
    extra: Optional[Sequence[str]] = None,
) -> Path:
    """Call, merge and annotate peaks; returns the annotation file."""

    treatment, background = split_background(samples, background_group)
    if background and any(s.sample == background_group for s in treatment):
        raise ValueError(
            f"Sample name '{background_group}' clashes with the pooled background tag directory"
        )
    for sample in samples:
        sample.ensure_paths(require_bam=True)
    ensure_commands(["makeTagDirectory", "findPeaks", "annotatePeaks.pl"])

    tag_root = ensure_directory(output_dir / "tags")
    tag_dirs = {s.sample: make_tag_directory([s.bam], tag_root / s.sample) for s in treatment}
    control_dir = None
    if background:
        control_dir = make_tag_directory([s.bam for s in background], tag_root / background_group)
    else:
        logging.warning("No '%s' samples in the sheet; calling peaks without a control", background_group)

    peak_files = find_peaks(tag_dirs, output_dir / "peaks", control_dir=control_dir, style=style, extra=extra)
    consensus = build_consensus(peak_files, min_overlap=min_overlap)
    consensus_bed = write_consensus_bed(consensus, output_dir / "consensus_peaks.bed")
    return annotate_peaks(consensus_bed, genome, output_dir / "consensus_annotation.txt", gtf=gtf)


def counts_from_featurecounts(path: Path, samples: Sequence[SampleEntry]) -> pd.DataFrame:
    """Load a featureCounts table and rename BAM columns to sample names."""

    counts = read_featurecounts(path)
    return match_sample_columns(counts, samples)


def match_sample_columns(counts: pd.DataFrame, samples: Sequence[SampleEntry]) -> pd.DataFrame:
    column_map: Dict[str, str] = {}
    for sample in samples:
        for path in (sample.bam, sample.file):
            if path is None:
                continue
            column_map[str(path)] = sample.sample
            column_map[path.name] = sample.sample
            column_map[path.stem] = sample.sample
    renamed = counts.rename(columns={col: column_map.get(str(col), str(col)) for col in counts.columns})
    missing = [s.sample for s in samples if s.sample not in renamed.columns]
    if missing:
        raise ValueError(f"Counts matrix missing columns for samples: {', '.join(missing)}")
    return renamed[[s.sample for s in samples]]


def count_reads(
    samples: Sequence[SampleEntry],
    peaks: pd.DataFrame,
    *,
    output_dir: Path,
    threads: int = 1,
) -> Path:
    """Count reads of every sample over the peak regions with featureCounts."""

    for sample in samples:
        sample.ensure_paths(require_bam=True)
    ensure_commands(["featureCounts", "samtools"])
    saf = write_saf(peaks, output_dir / "peaks.saf")
    paired = detect_paired_end_bam(samples[0].bam, threads)
    return run_featurecounts(
        saf,
        [s.bam for s in samples],
        output_dir / "counts.txt",
        threads=threads,
        paired=paired,
    )


# ---------------------------------------------------------------------------
# Differential binding
# ---------------------------------------------------------------------------


@dataclass
class DifferentialResult:
    y: DGEList
    fit: QLFit
    test: QLTestResult
    table: pd.DataFrame
    decisions: pd.Series
    logcpm: pd.DataFrame
    reference: str
    test_group: str

    def summary(self) -> Dict[str, object]:
        factors = self.y.samples["norm_factors"]
        return {
            "comparison": f"{self.test_group} - {self.reference}",
            "regions_tested": self.y.n_regions,
            "norm_factors": {name: float(value) for name, value in factors.items()},
            "common_dispersion": self.y.common_dispersion,
            "common_bcv": float(np.sqrt(self.y.common_dispersion)),
            "dispersion_prior_df": self.y.prior_df,
            "ql_prior_df": self.fit.df_prior,
            "decisions": summarize_decisions(self.decisions),
        }


def run_differential(
    counts: pd.DataFrame,
    samples: Sequence[SampleEntry],
    *,
    genes: Optional[pd.DataFrame] = None,
    reference: Optional[str] = None,
    test: Optional[str] = None,
    fdr: float = 0.05,
    norm_method: str = "TMM",
    min_count: float = 10,
    min_total_count: float = 15,
    checkpoints: Optional[CheckpointRegistry] = None,
) -> DifferentialResult:
    """Filter, normalize, estimate dispersions and test ``test - reference``."""

    reference, test = resolve_groups(samples, reference, test)
    counts = counts[[s.sample for s in samples]]
    groups = [s.group for s in samples]
    if genes is not None:
        warn_overlapping_peaks(genes)

    y = DGEList(counts, groups, genes=genes)
    keep = filter_by_expr(y, min_count=min_count, min_total_count=min_total_count)
    y.subset(keep)
    if y.n_regions == 0:
        raise ValueError("No regions passed the expression filter")
    calc_norm_factors(y, method=norm_method)

    design = make_design(groups, levels=[reference, test])
    estimate_disp(y, design.to_numpy())
    fit = glm_ql_fit(y, design)
    result = glm_ql_ftest(fit, contrast=make_contrast(design, test, reference))
    table = top_tags(result)
    decisions = decide_tests(result, p_value=fdr)
    counts_by_call = summarize_decisions(decisions)
    logging.info(
        "%s vs %s: %d down, %d not significant, %d up at FDR < %g",
        test,
        reference,
        counts_by_call["Down"],
        counts_by_call["NotSig"],
        counts_by_call["Up"],
        fdr,
    )

    if checkpoints is not None:
        factors = y.samples["norm_factors"]
        checkpoints.record("filtered_regions", y.n_regions)
        checkpoints.record("norm_factor_min", float(factors.min()))
        checkpoints.record("norm_factor_max", float(factors.max()))
        checkpoints.record("common_bcv", float(np.sqrt(y.common_dispersion)))
        checkpoints.record("down", counts_by_call["Down"])
        checkpoints.record("up", counts_by_call["Up"])

    return DifferentialResult(
        y=y,
        fit=fit,
        test=result,
        table=table,
        decisions=decisions,
        logcpm=cpm(y, log=True),
        reference=reference,
        test_group=test,
    )


def export_results(
    diff: DifferentialResult,
    output_dir: Path,
    *,
    fdr: float = 0.05,
    make_plots: bool = True,
    interactive: bool = True,
) -> Dict[str, Path]:
    ensure_directory(output_dir)
    outputs = {
        "differential_results": output_dir / "differential_results.csv",
        "filtered_counts": output_dir / "filtered_counts.csv",
        "normalized_logcpm": output_dir / "normalized_logcpm.csv",
    }
    table = diff.table.copy()
    table["Decision"] = diff.decisions.reindex(table.index).to_numpy()
    table.to_csv(outputs["differential_results"])
    diff.y.counts.rename_axis("PeakID").to_csv(outputs["filtered_counts"])
    diff.logcpm.rename_axis("PeakID").to_csv(outputs["normalized_logcpm"])
    if make_plots:
        plot_paths = plots.generate_plots(
            diff.y,
            diff.fit,
            diff.table,
            diff.logcpm,
            output_dir / "plots",
            fdr_threshold=fdr,
            interactive=interactive,
        )
        outputs.update(plot_paths)
    return outputs


# ---------------------------------------------------------------------------
# Metadata persistence
# ---------------------------------------------------------------------------


def _json_default(value: object) -> object:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, np.generic):
        return value.item()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serialisable")


def save_metadata(metadata: Dict, output_path: Path) -> None:
    ensure_directory(output_path.parent)
    with output_path.open("w") as fh:
        json.dump(metadata, fh, indent=2, default=_json_default)


def _sample_metadata(samples: Sequence[SampleEntry]) -> List[Dict[str, Optional[str]]]:
    return [
        {
            "sample": s.sample,
            "group": s.group,
            "file": str(s.file) if s.file else None,
            "bam": str(s.bam) if s.bam else None,
        }
        for s in samples
    ]


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _require(args: argparse.Namespace, *names: str) -> None:
    missing = [f"--{name.replace('_', '-')}" for name in names if getattr(args, name, None) in (None, "")]
    if missing:
        raise ValueError(f"Missing required option(s): {', '.join(missing)}")


def _build_checkpoints(args: argparse.Namespace, manifest: Mapping[str, object]) -> CheckpointRegistry:
    source: Mapping[str, object] = manifest
    if getattr(args, "checkpoints", None):
        source = load_manifest(Path(args.checkpoints))
    registry = CheckpointRegistry.from_manifest(source, strict=bool(args.strict_checkpoints))
    if args.strict_checkpoints:
        registry.strict = True
    return registry


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def run_align(args: argparse.Namespace) -> List[SampleEntry]:
    _require(args, "samples")
    samples = load_samples(Path(args.samples))
    output_dir = ensure_directory(Path(args.output_dir))
    align_samples(
        samples,
        output_dir=output_dir,
        genome_fasta=_optional_path(args.genome_fasta),
        index_prefix=_optional_path(args.index_prefix),
        threads=args.threads,
        remove_duplicates=args.remove_duplicates,
    )
    sheet = write_samples(samples, output_dir / "samples_aligned.tsv")
    logging.info("Aligned sample sheet written to %s", sheet)
    return samples


def run_peaks(args: argparse.Namespace, samples: Optional[List[SampleEntry]] = None) -> Path:
    _require(args, "genome")
    if samples is None:
        _require(args, "samples")
        samples = load_samples(Path(args.samples))
    return call_peaks(
        samples,
        output_dir=ensure_directory(Path(args.output_dir)),
        genome=args.genome,
        background_group=args.background_group,
        min_overlap=args.min_overlap,
        style=args.peak_style,
        gtf=_optional_path(args.gtf),
        extra=args.homer_extra,
    )


def run_count(
    args: argparse.Namespace,
    samples: Optional[List[SampleEntry]] = None,
    peaks_path: Optional[Path] = None,
) -> Path:
    if samples is None:
        _require(args, "samples")
        samples = load_samples(Path(args.samples))
    if peaks_path is None:
        _require(args, "peaks")
        peaks_path = Path(args.peaks)
    treatment, _ = split_background(samples, args.background_group)
    peaks = read_peak_annotation(peaks_path)
    warn_overlapping_peaks(peaks)
    return count_reads(treatment, peaks, output_dir=ensure_directory(Path(args.output_dir)), threads=args.threads)


def run_diff(
    args: argparse.Namespace,
    manifest: Mapping[str, object],
    *,
    samples: Optional[List[SampleEntry]] = None,
    counts_path: Optional[Path] = None,
    peaks_path: Optional[Path] = None,
) -> Dict[str, object]:
    if samples is None:
        _require(args, "samples")
        samples = load_samples(Path(args.samples))
    if counts_path is None:
        _require(args, "counts")
        counts_path = Path(args.counts)
    if peaks_path is None and args.peaks:
        peaks_path = Path(args.peaks)

    treatment, background = split_background(samples, args.background_group)
    if background:
        logging.info("Excluding %d background sample(s) from testing", len(background))
    counts = match_sample_columns(read_counts_table(counts_path), treatment)
    genes = read_peak_annotation(peaks_path) if peaks_path is not None else None

    checkpoints = _build_checkpoints(args, manifest)
    diff = run_differential(
        counts,
        treatment,
        genes=genes,
        reference=args.reference_group,
        test=args.test_group,
        fdr=args.fdr,
        norm_method=args.norm_method,
        min_count=args.min_count,
        min_total_count=args.min_total_count,
        checkpoints=checkpoints,
    )
    output_dir = ensure_directory(Path(args.output_dir))
    outputs = export_results(
        diff,
        output_dir,
        fdr=args.fdr,
        make_plots=not args.no_plots,
        interactive=not args.no_interactive,
    )

    args_dict = dict(vars(args))
    metadata = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "args": args_dict,
        "samples": _sample_metadata(samples),
        "counts_matrix": str(counts_path),
        "peak_annotation": str(peaks_path) if peaks_path else None,
        "outputs": {key: str(path) for key, path in outputs.items()},
        "summary": diff.summary(),
        "checkpoints": checkpoints.metadata_entry(),
    }
    save_metadata(metadata, output_dir / "metadata.json")
    return metadata


def run_pipeline(args: argparse.Namespace, manifest: Mapping[str, object]) -> Dict[str, object]:
    """Align, call peaks, count and test in one go, reusing supplied intermediates."""

    _require(args, "samples")
    samples = load_samples(Path(args.samples))
    output_dir = ensure_directory(Path(args.output_dir))

    if any(s.bam is None for s in samples):
        align_samples(
            samples,
            output_dir=output_dir,
            genome_fasta=_optional_path(args.genome_fasta),
            index_prefix=_optional_path(args.index_prefix),
            threads=args.threads,
            remove_duplicates=args.remove_duplicates,
        )
        write_samples(samples, output_dir / "samples_aligned.tsv")

    peaks_path = _optional_path(args.peaks)
    if peaks_path is None:
        _require(args, "genome")
        peaks_path = call_peaks(
            samples,
            output_dir=output_dir,
            genome=args.genome,
            background_group=args.background_group,
            min_overlap=args.min_overlap,
            style=args.peak_style,
            gtf=_optional_path(args.gtf),
            extra=args.homer_extra,
        )

    counts_path = _optional_path(args.counts)
    if counts_path is None:
        counts_path = run_count(args, samples=samples, peaks_path=peaks_path)

    return run_diff(args, manifest, samples=samples, counts_path=counts_path, peaks_path=peaks_path)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--samples", help="Sample sheet (TSV/CSV) with sample, group and file columns")
    parser.add_argument("--output-dir", default="results", help="Output directory")
    parser.add_argument("--background-group", default="input", help="Group label of the background samples")
    parser.add_argument("--threads", type=int, default=4, help="Threads for external tools")
    parser.add_argument("--config", help="Manifest (JSON or key=value) supplying option defaults")
    parser.add_argument("--log-level", default="INFO", help="Logging level")


def add_align_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--genome-fasta", help="Reference genome FASTA used to build the bowtie2 index")
    parser.add_argument("--index-prefix", help="Existing bowtie2 index prefix")
    parser.add_argument("--remove-duplicates", action="store_true", help="Drop duplicates instead of marking them")


def add_peak_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--genome", help="HOMER genome name or FASTA path for annotatePeaks.pl")
    parser.add_argument("--gtf", help="Optional GTF passed to annotatePeaks.pl")
    parser.add_argument("--min-overlap", type=int, default=2, help="Minimum samples supporting a consensus peak")
    parser.add_argument("--peak-style", default="factor", choices=["factor", "histone"], help="findPeaks -style")
    parser.add_argument("--homer-extra", nargs="*", default=[], help="Additional arguments for findPeaks")


def add_diff_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--counts", help="Counts table (featureCounts output or CSV/TSV matrix)")
    parser.add_argument("--reference-group", help="Reference group (defaults to the first group listed)")
    parser.add_argument("--test-group", help="Test group (defaults to the other group)")
    parser.add_argument("--fdr", type=float, default=0.05, help="FDR threshold for significance calls")
    parser.add_argument("--norm-method", default="TMM", choices=list(NORM_METHODS), help="Normalization method")
    parser.add_argument("--min-count", type=float, default=10, help="filter_by_expr minimum count")
    parser.add_argument("--min-total-count", type=float, default=15, help="filter_by_expr minimum total count")
    parser.add_argument("--checkpoints", help="Manifest with expected values to verify")
    parser.add_argument("--strict-checkpoints", action="store_true", help="Fail when a checkpoint is missed")
    parser.add_argument("--no-plots", action="store_true", help="Skip plot generation")
    parser.add_argument("--no-interactive", action="store_true", help="Skip interactive HTML plots")


def build_parser(config_defaults: Optional[Mapping[str, object]] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chipql",
        description="ChIP-seq differential binding with quasi-likelihood F-tests",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    layout = {
        "align": ("Align FASTQ files and mark duplicates", (add_align_arguments,)),
        "peaks": ("Call, merge and annotate peaks with HOMER", (add_peak_arguments,)),
        "count": ("Count reads over peaks with featureCounts", ()),
        "diff": ("Test for differential binding from a counts table", (add_diff_arguments,)),
        "run": (
            "Run alignment, peak calling, counting and testing",
            (add_align_arguments, add_peak_arguments, add_diff_arguments),
        ),
    }
    for name, (help_text, extras) in layout.items():
        sub = subparsers.add_parser(name, help=help_text, formatter_class=argparse.ArgumentDefaultsHelpFormatter)
        add_common_arguments(sub)
        for add in extras:
            add(sub)
        if name in {"count", "diff"}:
            sub.add_argument("--peaks", help="Peak annotation (HOMER annotatePeaks output or BED)")
        elif name == "run":
            sub.add_argument("--peaks", help="Reuse an existing peak annotation instead of calling peaks")
        if config_defaults:
            actions = {action.dest: action for action in sub._actions}
            defaults = {}
            for key, value in config_defaults.items():
                if key not in actions:
                    continue
                # argparse never splits string defaults of list options
                if isinstance(value, str) and actions[key].nargs in ("*", "+"):
                    value = shlex.split(value)
                defaults[key] = value
            sub.set_defaults(**defaults)

    return parser


def config_defaults_from_manifest(manifest: Mapping[str, object]) -> Dict[str, object]:
    """Map manifest keys (``min-overlap`` or ``min_overlap``) onto option names."""

    defaults: Dict[str, object] = {}
    for key, value in manifest.items():
        if key in {"expected", "tolerances", "strict"} or key.startswith(("expected_", "tolerance_")):
            continue
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            value = value.strip().lower() == "true"
        defaults[key.replace("-", "_")] = value
    return defaults


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main(argv: Optional[Sequence[str]] = None) -> None:
    ensure_python_version()
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s: %(message)s",
    )

    try:
        manifest: Mapping[str, object] = {}
        if args.config:
            manifest = load_manifest(Path(args.config))
            args = build_parser(config_defaults_from_manifest(manifest)).parse_args(argv)

        if args.command == "align":
            run_align(args)
        elif args.command == "peaks":
            run_peaks(args)
        elif args.command == "count":
            run_count(args)
        elif args.command == "diff":
            run_diff(args, manifest)
        elif args.command == "run":
            run_pipeline(args, manifest)
        else:  # pragma: no cover - defensive guard
            parser.print_help()
            sys.exit(1)
    except Exception as exc:  # pragma: no cover - CLI exception reporting
        logging.error("Pipeline failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
