import json
import subprocess
import sys
from pathlib import Path

from bimerascan.table import read_table_tsv
from bimerascan.toy_data import make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "bimerascan"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def _read_verdicts(path: Path) -> dict:
    lines = path.read_text(encoding="utf-8").splitlines()
    header = lines[0].split("\t")
    rows = [dict(zip(header, line.split("\t"))) for line in lines[1:]]
    return {r["sequence"]: r for r in rows}


def test_quickstart_output() -> None:
    cp = _run_cli(["quickstart"])
    assert cp.returncode == 0
    assert "bimerascan detect" in cp.stdout
    assert "bimerascan merge" in cp.stdout


def test_detect_dry_run_does_not_write_outputs(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "detect"
    cp = _run_cli(["detect", "--table", toy["seqtab"], "--outdir", str(outdir), "--dry-run"])
    assert cp.returncode == 0
    assert "Dry-run" in cp.stdout
    assert not (outdir / "summary.json").exists()


def test_make_toy_data_and_detect(tmp_path: Path) -> None:
    toy_dir = tmp_path / "toy"
    cp = _run_cli(["make-toy-data", "--outdir", str(toy_dir)])
    assert cp.returncode == 0
    truth = json.loads((toy_dir / "truth.json").read_text(encoding="utf-8"))

    outdir = tmp_path / "out"
    cp = _run_cli(["detect", "--table", str(toy_dir / "seqtab.tsv"), "--outdir", str(outdir)])
    assert cp.returncode == 0, cp.stderr
    assert (outdir / "report.html").exists()
    assert (outdir / "plots" / "abundance_hist.png").exists()
    assert (outdir / "nonchim.fasta").exists()

    verdicts = _read_verdicts(outdir / "verdicts.tsv")
    flagged = {s for s, r in verdicts.items() if r["verdict"] == "bimera"}
    assert flagged == set(truth["bimeras"])

    nochim = read_table_tsv(outdir / "seqtab.nochim.tsv")
    assert not set(nochim.sequences) & set(truth["bimeras"])

    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    stats = summary["stats"]
    assert stats["reads_kept"] + stats["reads_removed"] == stats["reads_total"]
    assert stats["variants_bimera"] == len(truth["bimeras"])
    assert summary["options"]["consensus_method"] == "consensus"


def test_detect_fasta_pooled(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "fasta"
    cp = _run_cli(
        [
            "detect",
            "--fasta",
            toy["uniques_fasta"],
            "--method",
            "pooled",
            "--outdir",
            str(outdir),
            "--no-plots",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    truth = json.loads(Path(toy["truth"]).read_text(encoding="utf-8"))
    verdicts = _read_verdicts(outdir / "verdicts.tsv")
    assert {s for s, r in verdicts.items() if r["verdict"] == "bimera"} == set(truth["bimeras"])
    assert not (outdir / "plots").exists()


def test_malformed_table_fails_fast(tmp_path: Path) -> None:
    bad = tmp_path / "bad.tsv"
    bad.write_text("sample\tACGT\tACGT\nS1\t3\t4\n", encoding="utf-8")
    cp = _run_cli(["detect", "--table", str(bad), "--outdir", str(tmp_path / "out")])
    assert cp.returncode == 2
    assert "ValidationError" in cp.stderr
    assert "Duplicate variant" in cp.stderr


def test_merge_tables_command(tmp_path: Path) -> None:
    a = tmp_path / "a.tsv"
    b = tmp_path / "b.tsv"
    a.write_text("sample\tACGT\nS1\t3\n", encoding="utf-8")
    b.write_text("sample\tACGT\tTTTT\nS2\t1\t2\n", encoding="utf-8")
    out = tmp_path / "merged.tsv"
    cp = _run_cli(["merge", "--table", str(a), str(b), "--out", str(out)])
    assert cp.returncode == 0, cp.stderr
    merged = read_table_tsv(out)
    assert merged.samples == ["S1", "S2"]
    assert merged.counts.tolist() == [[3, 0], [1, 2]]


def test_sample_flag_rejected_with_table(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "out"
    cp = _run_cli(["detect", "--table", toy["seqtab"], "--sample", "S9", "--outdir", str(outdir)])
    assert cp.returncode == 2
    assert "--sample applies to --fasta input only" in cp.stderr
    assert not (outdir / "summary.json").exists()
