import json
from pathlib import Path

import pandas as pd
import pytest

import chipql
from conftest import simulate_nb_counts, write_homer_annotation


def _write_sheet(path, rows):
    pd.DataFrame(rows, columns=["sample", "group", "file"]).to_csv(path, sep="\t", index=False)
    return path


def _homer_peaks(path, rows):
    lines = ["# HOMER Peaks", "# findPeaks -style factor"]
    for i, (chrom, start, end) in enumerate(rows, start=1):
        lines.append(f"{path.stem}-{i}\t{chrom}\t{start + 1}\t{end}\t+\t10.0")
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def diff_inputs(tmp_path):
    counts, groups, truth = simulate_nb_counts(n_regions=300, dispersion=0.05, de_fraction=0.1, seed=3)
    counts["input_1"] = counts["wildtype_1"]
    counts_path = tmp_path / "counts.csv"
    counts.to_csv(counts_path)

    rows = [(name, group, f"bam/{name}.bam") for name, group in zip(counts.columns[:-1], groups)]
    rows.append(("input_1", "input", "bam/input_1.bam"))
    sheet = _write_sheet(tmp_path / "samples.tsv", rows)
    annotation = write_homer_annotation(tmp_path / "annotation.txt", counts.index)
    return {"counts": counts_path, "samples": sheet, "peaks": annotation, "truth": truth, "root": tmp_path}


def test_load_samples_resolves_relative_paths(tmp_path):
    sheet = _write_sheet(
        tmp_path / "samples.tsv",
        [("wt_1", "wildtype", "bam/wt_1.bam"), ("mut_1", "mutant", "fastq/mut_1.fastq.gz")],
    )
    samples = chipql.load_samples(sheet)
    assert [s.sample for s in samples] == ["wt_1", "mut_1"]
    assert samples[0].bam == tmp_path / "bam" / "wt_1.bam"
    assert samples[1].bam is None
    assert samples[1].file == tmp_path / "fastq" / "mut_1.fastq.gz"


def test_load_samples_rejects_duplicates(tmp_path):
    sheet = _write_sheet(tmp_path / "samples.tsv", [("a", "x", "a.bam"), ("a", "y", "b.bam")])
    with pytest.raises(ValueError, match="Duplicate sample"):
        chipql.load_samples(sheet)


def test_load_samples_requires_group(tmp_path):
    sheet = tmp_path / "samples.tsv"
    sheet.write_text("sample\tfile\na\ta.bam\n")
    with pytest.raises(ValueError, match="group"):
        chipql.load_samples(sheet)


def test_split_background_and_resolve_groups():
    samples = [
        chipql.SampleEntry("m1", "mutant", Path("m1.bam")),
        chipql.SampleEntry("w1", "wildtype", Path("w1.bam")),
        chipql.SampleEntry("i1", "input", Path("i1.bam")),
    ]
    treatment, background = chipql.split_background(samples)
    assert [s.sample for s in treatment] == ["m1", "w1"]
    assert [s.sample for s in background] == ["i1"]

    assert chipql.resolve_groups(treatment) == ("mutant", "wildtype")
    assert chipql.resolve_groups(treatment, reference="wildtype") == ("wildtype", "mutant")
    assert chipql.resolve_groups(treatment, test="mutant") == ("wildtype", "mutant")
    with pytest.raises(ValueError):
        chipql.resolve_groups(treatment, reference="knockout")
    with pytest.raises(ValueError):
        chipql.split_background(samples, background_group="igg")


def test_build_consensus_requires_support(tmp_path):
    peak_files = {
        "s1": _homer_peaks(tmp_path / "s1.txt", [("chr1", 1000, 1200), ("chr1", 5000, 5200)]),
        "s2": _homer_peaks(tmp_path / "s2.txt", [("chr1", 1100, 1300), ("chr2", 100, 400)]),
        "s3": _homer_peaks(tmp_path / "s3.txt", [("chr1", 1150, 1250)]),
    }
    consensus = chipql.build_consensus(peak_files, min_overlap=2)
    assert consensus.index.tolist() == ["consensus_1"]
    row = consensus.iloc[0]
    assert (row["Chromosome"], row["Start"], row["End"], row["Support"]) == ("chr1", 1000, 1300, 3)

    everything = chipql.build_consensus(peak_files, min_overlap=1)
    assert everything["Chromosome"].tolist() == ["chr1", "chr1", "chr2"]
    assert everything["Support"].tolist() == [3, 1, 1]

    with pytest.raises(ValueError, match="empty"):
        chipql.build_consensus(peak_files, min_overlap=4)


def test_write_consensus_bed_layout(tmp_path):
    consensus = pd.DataFrame(
        {"Chromosome": ["chr1"], "Start": [10], "End": [90], "Strand": ["+"], "Support": [2]},
        index=pd.Index(["consensus_1"], name="PeakID"),
    )
    path = chipql.write_consensus_bed(consensus, tmp_path / "consensus.bed")
    assert path.read_text() == "chr1\t10\t90\tconsensus_1\t2\t+\n"


def test_warn_overlapping_peaks():
    peaks = pd.DataFrame({"Chromosome": ["chr1", "chr1", "chr2"], "Start": [0, 50, 0], "End": [100, 150, 100]})
    assert chipql.warn_overlapping_peaks(peaks) == 1


def test_match_sample_columns_uses_bam_names():
    samples = [chipql.SampleEntry("wt", "wildtype", Path("/data/bam/wt_rep1.bam"))]
    counts = pd.DataFrame({"/data/bam/wt_rep1.bam": [1, 2]})
    assert chipql.match_sample_columns(counts, samples).columns.tolist() == ["wt"]
    with pytest.raises(ValueError):
        chipql.match_sample_columns(pd.DataFrame({"other.bam": [1]}), samples)


def test_diff_command_writes_results(diff_inputs):
    output_dir = diff_inputs["root"] / "results"
    chipql.main([
        "diff",
        "--samples", str(diff_inputs["samples"]),
        "--counts", str(diff_inputs["counts"]),
        "--peaks", str(diff_inputs["peaks"]),
        "--output-dir", str(output_dir),
        "--reference-group", "wildtype",
    ])

    table = pd.read_csv(output_dir / "differential_results.csv", index_col=0)
    assert {"Chromosome", "Gene Name", "logFC", "logCPM", "F", "PValue", "FDR", "Decision"} <= set(table.columns)
    assert table["PValue"].is_monotonic_increasing
    assert set(table["Decision"].unique()) <= {-1, 0, 1}

    filtered = pd.read_csv(output_dir / "filtered_counts.csv", index_col=0)
    assert "input_1" not in filtered.columns
    assert len(filtered) == len(table)

    for name in ("mds.png", "bcv.png", "ql_dispersion.png", "md_plot.png", "volcano.png",
                 "top_regions_heatmap.png", "md_plot.html", "volcano.html"):
        assert (output_dir / "plots" / name).exists()

    metadata = json.loads((output_dir / "metadata.json").read_text())
    summary = metadata["summary"]
    assert summary["comparison"] == "mutant - wildtype"
    assert sum(summary["decisions"].values()) == summary["regions_tested"]
    assert summary["decisions"]["Up"] > 0 and summary["decisions"]["Down"] > 0
    assert metadata["checkpoints"]["checked"] == 0


def test_diff_command_reads_config_manifest(diff_inputs):
    output_dir = diff_inputs["root"] / "configured"
    manifest = diff_inputs["root"] / "run.txt"
    manifest.write_text(
        "reference_group=wildtype\n"
        "fdr=0.1\n"
        "no_plots=true\n"
        "expected_common_bcv=0.25\n"
        "tolerance_common_bcv=1.0\n"
    )
    chipql.main([
        "diff",
        "--config", str(manifest),
        "--samples", str(diff_inputs["samples"]),
        "--counts", str(diff_inputs["counts"]),
        "--output-dir", str(output_dir),
    ])

    metadata = json.loads((output_dir / "metadata.json").read_text())
    assert metadata["args"]["fdr"] == pytest.approx(0.1)
    assert metadata["args"]["no_plots"] is True
    assert metadata["peak_annotation"] is None
    assert not (output_dir / "plots").exists()
    assert metadata["checkpoints"]["checked"] == 1
    assert metadata["checkpoints"]["failed"] == []


def test_strict_checkpoint_failure_exits(diff_inputs):
    manifest = diff_inputs["root"] / "strict.json"
    manifest.write_text(json.dumps({"expected": {"filtered_regions": 1}, "strict": True}))
    with pytest.raises(SystemExit) as excinfo:
        chipql.main([
            "diff",
            "--config", str(manifest),
            "--samples", str(diff_inputs["samples"]),
            "--counts", str(diff_inputs["counts"]),
            "--output-dir", str(diff_inputs["root"] / "strict"),
            "--no-plots",
        ])
    assert excinfo.value.code == 1


def test_missing_required_option_exits(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        chipql.main(["diff", "--output-dir", str(tmp_path)])
    assert excinfo.value.code == 1


def test_config_defaults_skip_checkpoint_keys():
    defaults = chipql.config_defaults_from_manifest(
        {"min-overlap": 3, "no_plots": "True", "expected": {"up": 1}, "tolerance_up": "0.1", "strict": True}
    )
    assert defaults == {"min_overlap": 3, "no_plots": True}


def test_counts_from_featurecounts_renames_bam_columns(tmp_path):
    table = tmp_path / "counts.txt"
    table.write_text(
        "# Program:featureCounts v2.0.6\n"
        "Geneid\tChr\tStart\tEnd\tStrand\tLength\t/data/bam/mut_1.bam\t/data/bam/wt_1.bam\n"
        "consensus_1\tchr1\t101\t300\t+\t200\t15\t22\n"
    )
    samples = [
        chipql.SampleEntry("wt_1", "wildtype", Path("/data/bam/wt_1.bam")),
        chipql.SampleEntry("mut_1", "mutant", Path("/data/bam/mut_1.bam")),
    ]
    counts = chipql.counts_from_featurecounts(table, samples)
    assert counts.columns.tolist() == ["wt_1", "mut_1"]
    assert counts.loc["consensus_1"].tolist() == [22, 15]


def test_align_samples_aligns_fastq_and_keeps_bams(tmp_path, monkeypatch):
    fastq = tmp_path / "mut_1.fastq.gz"
    fastq.write_bytes(b"")
    existing = tmp_path / "wt_1.bam"
    existing.write_bytes(b"")
    aligned = []

    def fake_align(fq, index_prefix, output_bam, **kwargs):
        aligned.append((fq, index_prefix))
        output_bam.write_bytes(b"")
        return output_bam

    def fake_markdup(bam, output_bam, **kwargs):
        output_bam.write_bytes(b"")
        return output_bam

    monkeypatch.setattr(chipql, "ensure_commands", lambda commands: None)
    monkeypatch.setattr(chipql, "build_bowtie2_index", lambda fasta, prefix, threads: prefix)
    monkeypatch.setattr(chipql, "align_fastq", fake_align)
    monkeypatch.setattr(chipql, "mark_duplicates", fake_markdup)
    monkeypatch.setattr(chipql, "index_bam", lambda bam, threads: None)

    samples = [
        chipql.SampleEntry("mut_1", "mutant", fastq),
        chipql.SampleEntry("wt_1", "wildtype", existing),
    ]
    chipql.align_samples(samples, output_dir=tmp_path / "out", genome_fasta=tmp_path / "hg38.fa")
    assert aligned == [(fastq, tmp_path / "out" / "index" / "hg38")]
    assert samples[0].bam == tmp_path / "out" / "bam" / "mut_1.bam"
    assert samples[1].bam == existing
    assert not (tmp_path / "out" / "bam" / "mut_1.sorted.bam").exists()


def test_align_samples_needs_an_index(tmp_path, monkeypatch):
    monkeypatch.setattr(chipql, "ensure_commands", lambda commands: None)
    samples = [chipql.SampleEntry("mut_1", "mutant", tmp_path / "mut_1.fastq.gz")]
    with pytest.raises(ValueError, match="bowtie2 index"):
        chipql.align_samples(samples, output_dir=tmp_path)


def test_written_sheet_loads_back_from_a_relative_output_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    bam = Path("results/bam/mut_1.bam")
    bam.parent.mkdir(parents=True)
    bam.write_bytes(b"")
    fastq = tmp_path / "fastq" / "mut_1.fastq.gz"
    samples = [chipql.SampleEntry("mut_1", "mutant", fastq, bam=bam)]

    sheet = chipql.write_samples(samples, Path("results/samples_aligned.tsv"))
    reloaded = chipql.load_samples(sheet)

    assert reloaded[0].bam == bam
    assert reloaded[0].file.resolve() == fastq.resolve()
    assert reloaded[0].mate is None
    reloaded[0].ensure_paths(require_bam=True)


def test_config_string_is_split_for_list_options():
    args = chipql.build_parser({"homer_extra": "-size 200 -minDist 500"}).parse_args(["peaks", "--genome", "hg38"])
    assert args.homer_extra == ["-size", "200", "-minDist", "500"]

    args = chipql.build_parser({"homer_extra": ["-size", "given"]}).parse_args(["peaks"])
    assert args.homer_extra == ["-size", "given"]


@pytest.fixture
def bam_samples(tmp_path):
    bam_dir = tmp_path / "bam"
    bam_dir.mkdir()
    samples = []
    for name, group in [("mut_1", "mutant"), ("mut_2", "mutant"), ("wt_1", "wildtype"),
                        ("wt_2", "wildtype"), ("input_1", "input"), ("input_2", "input")]:
        bam = bam_dir / f"{name}.bam"
        bam.write_bytes(b"")
        samples.append(chipql.SampleEntry(name, group, bam))
    return samples


def test_call_peaks_pools_background_and_merges_peaks(tmp_path, monkeypatch, bam_samples):
    tag_calls = []
    peak_calls = {}
    annotated = {}

    def fake_tag_directory(bams, tag_dir):
        tag_calls.append((list(bams), tag_dir))
        return tag_dir

    def fake_find_peaks(tag_dirs, output_dir, *, control_dir, style, extra):
        peak_calls.update(control_dir=control_dir, style=style, extra=extra, samples=list(tag_dirs))
        output_dir.mkdir(parents=True, exist_ok=True)
        return {
            sample: _homer_peaks(output_dir / f"{sample}_peaks.txt", [("chr1", 1000 + 10 * i, 1200 + 10 * i)])
            for i, sample in enumerate(tag_dirs)
        }

    def fake_annotate(peaks, genome, output, *, gtf):
        annotated.update(peaks=peaks, genome=genome, gtf=gtf)
        return output

    monkeypatch.setattr(chipql, "ensure_commands", lambda commands: None)
    monkeypatch.setattr(chipql, "make_tag_directory", fake_tag_directory)
    monkeypatch.setattr(chipql, "find_peaks", fake_find_peaks)
    monkeypatch.setattr(chipql, "annotate_peaks", fake_annotate)

    out = tmp_path / "out"
    result = chipql.call_peaks(bam_samples, output_dir=out, genome="hg38", extra=["-size", "200"])

    assert result == out / "consensus_annotation.txt"
    assert len(tag_calls) == 5
    pooled = [call for call in tag_calls if call[1] == out / "tags" / "input"]
    assert pooled == [([s.bam for s in bam_samples[4:]], out / "tags" / "input")]
    assert peak_calls["samples"] == ["mut_1", "mut_2", "wt_1", "wt_2"]
    assert peak_calls["control_dir"] == out / "tags" / "input"
    assert peak_calls["extra"] == ["-size", "200"]
    assert annotated["peaks"] == out / "consensus_peaks.bed"
    assert annotated["genome"] == "hg38"
    assert (out / "consensus_peaks.bed").read_text() == "chr1\t1000\t1230\tconsensus_1\t4\t+\n"


def test_call_peaks_rejects_sample_named_like_background(tmp_path, monkeypatch, bam_samples):
    monkeypatch.setattr(chipql, "ensure_commands", lambda commands: None)
    bam_samples[0].sample = "input"
    with pytest.raises(ValueError, match="clashes"):
        chipql.call_peaks(bam_samples, output_dir=tmp_path / "out", genome="hg38")


def test_count_reads_writes_saf_and_passes_paired_flag(tmp_path, monkeypatch, bam_samples):
    counted = {}

    def fake_featurecounts(saf, bams, output, *, threads, paired):
        counted.update(saf=saf, bams=list(bams), threads=threads, paired=paired)
        return output

    monkeypatch.setattr(chipql, "ensure_commands", lambda commands: None)
    monkeypatch.setattr(chipql, "detect_paired_end_bam", lambda bam, threads: True)
    monkeypatch.setattr(chipql, "run_featurecounts", fake_featurecounts)

    peaks = pd.DataFrame(
        {"Chromosome": ["chr1", "chr2"], "Start": [99, 499], "End": [300, 800], "Strand": ["+", "+"]},
        index=pd.Index(["consensus_1", "consensus_2"], name="PeakID"),
    )
    treatment = bam_samples[:4]
    out = tmp_path / "out"
    result = chipql.count_reads(treatment, peaks, output_dir=out, threads=2)

    assert result == out / "counts.txt"
    assert counted["saf"] == out / "peaks.saf"
    assert counted["bams"] == [s.bam for s in treatment]
    assert counted["threads"] == 2
    assert counted["paired"] is True
    saf = pd.read_csv(out / "peaks.saf", sep="\t")
    assert saf["GeneID"].tolist() == ["consensus_1", "consensus_2"]
    assert saf["Start"].tolist() == [100, 500]


def _fail(*args, **kwargs):
    raise AssertionError("stage should have been skipped")


def test_run_command_reuses_supplied_peaks_and_counts(diff_inputs, monkeypatch):
    monkeypatch.setattr(chipql, "align_samples", _fail)
    monkeypatch.setattr(chipql, "call_peaks", _fail)
    monkeypatch.setattr(chipql, "count_reads", _fail)
    output_dir = diff_inputs["root"] / "pipeline"
    chipql.main([
        "run",
        "--samples", str(diff_inputs["samples"]),
        "--peaks", str(diff_inputs["peaks"]),
        "--counts", str(diff_inputs["counts"]),
        "--output-dir", str(output_dir),
        "--no-plots",
    ])

    metadata = json.loads((output_dir / "metadata.json").read_text())
    assert metadata["counts_matrix"] == str(diff_inputs["counts"])
    assert metadata["peak_annotation"] == str(diff_inputs["peaks"])
    assert (output_dir / "differential_results.csv").exists()


def test_run_command_counts_treatment_samples_over_called_peaks(diff_inputs, monkeypatch):
    calls = {}

    def fake_call_peaks(samples, *, output_dir, genome, background_group, min_overlap, style, gtf, extra):
        calls["peaks"] = dict(genome=genome, min_overlap=min_overlap, extra=extra, n=len(samples))
        return diff_inputs["peaks"]

    def fake_count_reads(samples, peaks, *, output_dir, threads):
        calls["count"] = dict(samples=[s.sample for s in samples], regions=len(peaks))
        return diff_inputs["counts"]

    monkeypatch.setattr(chipql, "align_samples", _fail)
    monkeypatch.setattr(chipql, "call_peaks", fake_call_peaks)
    monkeypatch.setattr(chipql, "count_reads", fake_count_reads)

    manifest = diff_inputs["root"] / "run.txt"
    manifest.write_text("genome=hg38\nmin_overlap=3\nhomer_extra=-size 200\n")
    output_dir = diff_inputs["root"] / "pipeline"
    chipql.main([
        "run",
        "--config", str(manifest),
        "--samples", str(diff_inputs["samples"]),
        "--output-dir", str(output_dir),
        "--no-plots",
    ])

    assert calls["peaks"] == {"genome": "hg38", "min_overlap": 3, "extra": ["-size", "200"], "n": 7}
    assert "input_1" not in calls["count"]["samples"]
    assert len(calls["count"]["samples"]) == 6
    assert calls["count"]["regions"] == 300
    assert (output_dir / "metadata.json").exists()
