"""Wrappers around the command-line tools chipql delegates to.

Alignment (bowtie2), BAM handling (samtools), peak calling and annotation
(HOMER) and read counting (Subread featureCounts) are never reimplemented;
these helpers build the command lines, run them and check their outputs.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Set

LOGGER = logging.getLogger(__name__)

INSTALL_HINTS = {
    "bowtie2": "conda install -c bioconda bowtie2",
    "bowtie2-build": "conda install -c bioconda bowtie2",
    "samtools": "conda install -c bioconda samtools",
    "makeTagDirectory": "conda install -c bioconda homer",
    "findPeaks": "conda install -c bioconda homer",
    "annotatePeaks.pl": "conda install -c bioconda homer",
    "featureCounts": "conda install -c bioconda subread",
}


def ensure_commands(commands: Sequence[str]) -> None:
    missing = sorted({cmd for cmd in commands if shutil.which(cmd) is None})
    if missing:
        hints = sorted({INSTALL_HINTS[cmd] for cmd in missing if cmd in INSTALL_HINTS})
        message = f"Missing required command(s): {', '.join(missing)}."
        if hints:
            message += " Install with: " + "; ".join(hints)
        raise RuntimeError(message)


def ensure_directory(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def run_command(
    cmd: Sequence[str],
    *,
    workdir: Optional[Path] = None,
    stdout: Optional[Path] = None,
    log: bool = True,
) -> None:
    """Run a subprocess command with logging and error handling.

    When ``stdout`` is given the command's standard output is written there.
    """

    cmd = [str(part) for part in cmd]
    if log:
        LOGGER.info("Running command: %s%s", " ".join(cmd), f" > {stdout}" if stdout else "")
    if stdout is not None:
        ensure_directory(Path(stdout).parent)
        with Path(stdout).open("w") as handle:
            result = subprocess.run(cmd, cwd=str(workdir) if workdir else None, stdout=handle, check=False)
    else:
        result = subprocess.run(cmd, cwd=str(workdir) if workdir else None, check=False)
    if result.returncode != 0:
        raise RuntimeError(f"Command failed with exit code {result.returncode}: {' '.join(cmd)}")


def run_piped(upstream: Sequence[str], downstream: Sequence[str]) -> None:
    """Run ``upstream | downstream`` and fail if either side fails."""

    upstream = [str(part) for part in upstream]
    downstream = [str(part) for part in downstream]
    LOGGER.info("Running command: %s | %s", " ".join(upstream), " ".join(downstream))
    producer = subprocess.Popen(upstream, stdout=subprocess.PIPE)
    try:
        consumer = subprocess.Popen(downstream, stdin=producer.stdout)
    finally:
        if producer.stdout:
            producer.stdout.close()
    consumer_code = consumer.wait()
    producer_code = producer.wait()
    if producer_code != 0:
        raise RuntimeError(f"Command failed with exit code {producer_code}: {' '.join(upstream)}")
    if consumer_code != 0:
        raise RuntimeError(f"Command failed with exit code {consumer_code}: {' '.join(downstream)}")


def _maybe_threaded_cmd(cmd: List[str], threads: int) -> List[str]:
    if threads <= 1:
        return cmd

    threaded = list(cmd)
    # samtools takes the thread flag right after the subcommand
    if len(threaded) >= 2:
        threaded.insert(2, "-@")
        threaded.insert(3, str(threads))
    return threaded


# ---------------------------------------------------------------------------
# Alignment and BAM post-processing
# ---------------------------------------------------------------------------


def _bowtie2_index_exists(prefix: Path) -> bool:
    return any(Path(f"{prefix}.1.{ext}").exists() for ext in ("bt2", "bt2l"))


def build_bowtie2_index(fasta: Path, prefix: Path, threads: int = 1) -> Path:
    """Build a bowtie2 index for ``fasta`` unless one already exists at ``prefix``."""

    if _bowtie2_index_exists(prefix):
        LOGGER.info("Reusing bowtie2 index %s", prefix)
        return prefix
    if not fasta.exists():
        raise FileNotFoundError(f"Reference genome FASTA not found: {fasta}")
    ensure_directory(prefix.parent)
    run_command(["bowtie2-build", "--threads", str(threads), str(fasta), str(prefix)])
    return prefix


def align_fastq(
    fastq: Path,
    index_prefix: Path,
    output_bam: Path,
    *,
    fastq_mate: Optional[Path] = None,
    threads: int = 1,
) -> Path:
    """Align reads with bowtie2 and write a coordinate-sorted BAM."""

    for path in (fastq, fastq_mate):
        if path is not None and not path.exists():
            raise FileNotFoundError(f"FASTQ file not found: {path}")
    ensure_directory(output_bam.parent)

    aligner = ["bowtie2", "-p", str(threads), "-x", str(index_prefix)]
    if fastq_mate is None:
        aligner.extend(["-U", str(fastq)])
    else:
        aligner.extend(["-1", str(fastq), "-2", str(fastq_mate)])
    sorter = _maybe_threaded_cmd(["samtools", "sort", "-o", str(output_bam), "-"], threads)
    run_piped(aligner, sorter)

    if not output_bam.exists():
        raise FileNotFoundError(f"Alignment output not found: {output_bam}")
    return output_bam


def mark_duplicates(bam: Path, output_bam: Path, *, threads: int = 1, remove: bool = False) -> Path:
    """Mark (or remove) PCR duplicates with samtools fixmate/markdup."""

    if not bam.exists():
        raise FileNotFoundError(f"BAM file not found: {bam}")
    ensure_directory(output_bam.parent)
    stem = output_bam.with_suffix("")
    by_name = Path(f"{stem}.byname.bam")
    fixed = Path(f"{stem}.fixmate.bam")
    by_position = Path(f"{stem}.sorted.bam")

    run_command(_maybe_threaded_cmd(["samtools", "sort", "-n", "-o", str(by_name), str(bam)], threads))
    run_command(_maybe_threaded_cmd(["samtools", "fixmate", "-m", str(by_name), str(fixed)], threads))
    run_command(_maybe_threaded_cmd(["samtools", "sort", "-o", str(by_position), str(fixed)], threads))
    markdup = _maybe_threaded_cmd(["samtools", "markdup"], threads)
    if remove:
        markdup.append("-r")
    markdup.extend([str(by_position), str(output_bam)])
    run_command(markdup)

    for intermediate in (by_name, fixed, by_position):
        intermediate.unlink(missing_ok=True)
    return output_bam


def _bam_index_candidates(bam: Path) -> List[Path]:
    candidates = [Path(f"{bam}.bai")]
    if bam.suffix:
        candidates.append(bam.with_suffix(".bai"))
    seen: Set[Path] = set()
    unique: List[Path] = []
    for candidate in candidates:
        if candidate not in seen:
            unique.append(candidate)
            seen.add(candidate)
    return unique


def index_bam(bam: Path, threads: int = 1) -> None:
    for candidate in _bam_index_candidates(bam):
        if candidate.exists():
            return
    cmd = ["samtools", "index"]
    if threads > 1:
        cmd.extend(["-@", str(threads)])
    cmd.append(str(bam))
    run_command(cmd)


def detect_paired_end_bam(bam: Path, threads: int = 1) -> bool:
    """Return ``True`` if the BAM contains paired-end reads."""

    cmd = ["samtools", "view", "-c", "-f", "1"]
    if threads > 1:
        cmd.extend(["-@", str(threads)])
    cmd.append(str(bam))

    result = subprocess.run(cmd, check=False, capture_output=True, text=True)
    if result.returncode != 0:
        raise RuntimeError(
            f"samtools view failed for {bam} with exit code {result.returncode}: {result.stderr.strip()}"
        )
    try:
        count = int(result.stdout.strip() or 0)
    except ValueError as exc:
        raise RuntimeError(f"Unable to parse samtools view output for {bam}: {result.stdout!r}") from exc

    paired = count > 0
    LOGGER.info("Detected %s BAM for %s", "paired-end" if paired else "single-end", bam)
    return paired


# ---------------------------------------------------------------------------
# HOMER peak calling and annotation
# ---------------------------------------------------------------------------


def make_tag_directory(bams: Sequence[Path], tag_dir: Path, extra: Optional[Sequence[str]] = None) -> Path:
    """Pool one or more BAMs into a HOMER tag directory."""

    missing = [str(bam) for bam in bams if not Path(bam).exists()]
    if missing:
        raise FileNotFoundError(f"BAM file(s) not found: {', '.join(missing)}")
    ensure_directory(tag_dir.parent)
    run_command(["makeTagDirectory", str(tag_dir), *(extra or []), *(str(bam) for bam in bams)])
    return tag_dir


@dataclass
class PeakJob:
    sample: str
    peak_path: Path
    process: subprocess.Popen


def _find_peaks_command(
    tag_dir: Path,
    output: Path,
    *,
    control_dir: Optional[Path],
    style: str,
    extra: Sequence[str],
) -> List[str]:
    cmd = ["findPeaks", str(tag_dir), "-style", style, "-o", str(output)]
    if control_dir is not None:
        cmd.extend(["-i", str(control_dir)])
    cmd.extend(extra)
    return cmd


def find_peaks(
    tag_dirs: Mapping[str, Path],
    output_dir: Path,
    *,
    control_dir: Optional[Path] = None,
    style: str = "factor",
    extra: Optional[Sequence[str]] = None,
) -> Dict[str, Path]:
    """Run HOMER ``findPeaks`` for every tag directory in parallel.

    Each sample is called against the background tag directory when one is
    given.  Returns the peak file of each sample.
    """

    ensure_directory(output_dir)
    jobs: List[PeakJob] = []
    for sample, tag_dir in tag_dirs.items():
        peak_path = output_dir / f"{sample}_peaks.txt"
        cmd = _find_peaks_command(tag_dir, peak_path, control_dir=control_dir, style=style, extra=extra or [])
        LOGGER.info("Launching findPeaks for sample %s: %s", sample, " ".join(cmd))
        jobs.append(PeakJob(sample=sample, peak_path=peak_path, process=subprocess.Popen(cmd)))

    results = [(job, job.process.wait()) for job in jobs]
    failed = [job for job, code in results if code != 0]
    if failed:
        errors = ", ".join(f"{job.sample} (exit {job.process.returncode})" for job in failed)
        raise RuntimeError(f"findPeaks failed for sample(s): {errors}")

    outputs: Dict[str, Path] = {}
    for job, _ in results:
        if not job.peak_path.exists():
            raise FileNotFoundError(f"findPeaks output not found for sample {job.sample}: {job.peak_path}")
        outputs[job.sample] = job.peak_path
    return outputs


def annotate_peaks(
    peaks: Path,
    genome: str,
    output: Path,
    *,
    gtf: Optional[Path] = None,
) -> Path:
    """Annotate peaks with the nearest gene using HOMER ``annotatePeaks.pl``."""

    if not peaks.exists():
        raise FileNotFoundError(f"Peak file not found: {peaks}")
    cmd = ["annotatePeaks.pl", str(peaks), genome]
    if gtf is not None:
        cmd.extend(["-gtf", str(gtf)])
    run_command(cmd, stdout=output)
    return output


# ---------------------------------------------------------------------------
# Read counting
# ---------------------------------------------------------------------------


def run_featurecounts(
    saf: Path,
    bams: Sequence[Path],
    output: Path,
    *,
    threads: int = 1,
    paired: bool = False,
) -> Path:
    """Count reads over SAF regions with featureCounts."""

    if not bams:
        raise ValueError("At least one BAM file is required for counting")
    missing = [str(bam) for bam in bams if not Path(bam).exists()]
    if missing:
        raise FileNotFoundError(f"BAM file(s) not found: {', '.join(missing)}")
    ensure_directory(output.parent)
    cmd = ["featureCounts", "-F", "SAF", "-a", str(saf), "-o", str(output), "-T", str(threads)]
    if paired:
        cmd.extend(["-p", "--countReadPairs"])
    cmd.extend(str(bam) for bam in bams)
    run_command(cmd)
    if not output.exists():
        raise FileNotFoundError(f"featureCounts failed to produce counts table {output}")
    return output
