from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional

from . import __version__
from .detector import detect, remove_bimeras
from .models import CONSENSUS_METHODS, METHOD_CONSENSUS, BimeraOptions, Verdict
from .plotting import plot_abundance_hist, plot_reads_per_sample
from .report import render_report
from .table import (
    SequenceTable,
    merge_tables,
    read_table_tsv,
    read_uniques_fasta,
    write_table_tsv,
    write_variants_fasta,
)
from .toy_data import make_toy_data
from .utils import ensure_outdir, open_textmaybe_gzip, write_json

_TOP_BIMERAS = 25


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    msg = f"{err.__class__.__name__}: {err}"
    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bimerascan",
        description=(
            "bimerascan: de novo bimera (two-parent chimera) removal for amplicon "
            "sequence variant tables."
        ),
    )
    p.add_argument("--version", action="version", version=f"bimerascan {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print ready-to-run recipes for common scenarios.",
    )

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a small sequence table with known bimeras for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # detect
    # -----------------
    d = sub.add_parser(
        "detect",
        help="Identify and remove bimeric variants from a sequence table.",
    )
    src = d.add_mutually_exclusive_group(required=True)
    src.add_argument("--table", type=_path_exists, help="Sequence table TSV (DADA2 seqtab layout, .gz ok).")
    src.add_argument("--fasta", type=_path_exists, help="Dereplicated FASTA with ;size=N annotations.")
    d.add_argument(
        "--sample",
        default=None,
        help="Sample name for --fasta input (default: file name stem). Not valid with --table.",
    )
    d.add_argument("--outdir", required=True, help="Output directory.")

    defaults = BimeraOptions()
    d.add_argument(
        "--method",
        choices=list(CONSENSUS_METHODS),
        default=defaults.consensus_method,
        help=(
            "pooled: test on total abundances; per-sample: bimera only if flagged in every "
            "sample where tested; consensus: bimera if flagged in enough samples "
            f"(default: {METHOD_CONSENSUS})."
        ),
    )
    d.add_argument(
        "--min-fold",
        type=float,
        default=defaults.min_fold_parent_over_abundance,
        help="Parents must be at least this many times more abundant than the child.",
    )
    d.add_argument(
        "--min-abundance",
        type=int,
        default=defaults.minimum_abundance_to_test,
        help="Do not test variants with fewer reads than this (per sample for per-sample/consensus).",
    )
    d.add_argument(
        "--min-overlap",
        type=int,
        default=defaults.min_overlap_bases,
        help="Minimum bases contributed by each parent.",
    )
    d.add_argument(
        "--min-sample-fraction",
        type=float,
        default=defaults.min_sample_fraction,
        help="consensus: fraction of tested samples that must flag a variant.",
    )
    d.add_argument(
        "--ignore-negatives",
        type=int,
        default=defaults.ignore_n_negatives,
        help="consensus: number of unflagged samples tolerated.",
    )
    d.add_argument("--threads", type=int, default=defaults.threads, help="Worker processes.")
    d.add_argument("--no-plots", action="store_true", help="Skip plots in the report.")
    d.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    d.add_argument("--resume", action="store_true", help="Skip if outputs already exist.")
    d.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # merge
    # -----------------
    m = sub.add_parser(
        "merge",
        help="Merge sequence tables from several runs into one table.",
    )
    m.add_argument("--table", required=True, nargs="+", type=_path_exists, help="Input table TSVs.")
    m.add_argument("--out", required=True, help="Output TSV path.")
    m.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "bimerascan quickstart (copy/paste):",
        "",
        "1) Sequence table (multi-sample, consensus calls):",
        "   bimerascan detect \\",
        "     --table seqtab.tsv \\",
        "     --outdir results/",
        "   Outputs: results/report.html, results/seqtab.nochim.tsv, results/nonchim.fasta",
        "",
        "2) Dereplicated FASTA (single sample, vsearch ;size= headers):",
        "   bimerascan detect \\",
        "     --fasta uniques.fasta \\",
        "     --method pooled \\",
        "     --outdir results_fasta/",
        "",
        "3) Several sequencing runs:",
        "   bimerascan merge --table run1.tsv run2.tsv --out seqtab.tsv",
        "   bimerascan detect --table seqtab.tsv --outdir results/",
        "",
        "Tip: use --dry-run to validate inputs and print planned outputs.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def _options_from_args(args: argparse.Namespace) -> BimeraOptions:
    opts = BimeraOptions(
        min_fold_parent_over_abundance=float(args.min_fold),
        minimum_abundance_to_test=int(args.min_abundance),
        consensus_method=str(args.method),
        min_overlap_bases=int(args.min_overlap),
        min_sample_fraction=float(args.min_sample_fraction),
        ignore_n_negatives=int(args.ignore_negatives),
        threads=int(args.threads),
    )
    opts.validate()
    return opts


def _load_input(args: argparse.Namespace) -> SequenceTable:
    if args.table:
        if args.sample is not None:
            raise ValueError("--sample applies to --fasta input only; --table names its samples.")
        return read_table_tsv(args.table)
    return read_uniques_fasta(args.fasta, sample=args.sample)


def _write_verdicts_tsv(
    path: Path,
    table: SequenceTable,
    verdicts: Dict[str, Verdict],
    ids: Dict[str, str],
) -> None:
    totals = table.totals()
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write(
            "\t".join(
                [
                    "id",
                    "abundance",
                    "verdict",
                    "breakpoint",
                    "left_parent",
                    "right_parent",
                    "samples_flagged",
                    "samples_tested",
                    "sequence",
                ]
            )
            + "\n"
        )
        for j, seq in enumerate(table.sequences):
            v = verdicts[seq]
            left = ids[v.parents.left] if v.parents is not None else ""
            right = ids[v.parents.right] if v.parents is not None else ""
            fh.write(
                f"{ids[seq]}\t{int(totals[j])}\t{v.label}\t"
                f"{'' if v.breakpoint is None else v.breakpoint}\t{left}\t{right}\t"
                f"{'' if v.samples_flagged is None else v.samples_flagged}\t"
                f"{'' if v.samples_tested is None else v.samples_tested}\t{seq}\n"
            )


def _top_bimeras(table: SequenceTable, verdicts: Dict[str, Verdict], ids: Dict[str, str]) -> List[Dict[str, object]]:
    totals = dict(zip(table.sequences, (int(x) for x in table.totals())))
    rows = []
    for seq, v in verdicts.items():
        if not v.is_bimera or v.parents is None:
            continue
        rows.append(
            {
                "sequence": seq,
                "abundance": totals[seq],
                "breakpoint": v.breakpoint,
                "left_id": ids[v.parents.left],
                "right_id": ids[v.parents.right],
            }
        )
    rows.sort(key=lambda r: (-int(r["abundance"]), str(r["sequence"])))  # type: ignore[call-overload]
    return rows[:_TOP_BIMERAS]


def cmd_detect(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "detect.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("bimerascan")
    logger.info("bimerascan %s", __version__)

    try:
        opts = _options_from_args(args)
        table = _load_input(args)
        input_path = args.table or args.fasta

        if args.dry_run:
            print("Dry-run: inputs look OK.")
            print(f"Samples: {table.n_samples}  Variants: {table.n_variants}  Reads: {table.total_reads()}")
            print(f"Method: {opts.consensus_method}")
            print("Planned outputs:")
            print(f"  report.html -> {outdir / 'report.html'}")
            print(f"  seqtab.nochim.tsv -> {outdir / 'seqtab.nochim.tsv'}")
            print(f"  nonchim.fasta -> {outdir / 'nonchim.fasta'}")
            print(f"  verdicts.tsv -> {outdir / 'verdicts.tsv'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        outdir = ensure_outdir(outdir)

        if args.resume and (outdir / "summary.json").exists():
            logger.info("Resume enabled: summary.json already exists in %s", outdir)
            print(str(outdir / "report.html"))
            return 0

        verdicts = detect(table, opts, progress=True)
        filtered, stats = remove_bimeras(table, verdicts)

        ids = {seq: f"ASV{j + 1}" for j, seq in enumerate(table.sequences)}
        write_table_tsv(filtered, outdir / "seqtab.nochim.tsv")
        write_variants_fasta(filtered, outdir / "nonchim.fasta", names=ids)
        _write_verdicts_tsv(outdir / "verdicts.tsv", table, verdicts, ids)

        summary = {
            "input": str(input_path),
            "n_samples": table.n_samples,
            "options": asdict(opts),
            "stats": stats.to_dict(),
        }
        write_json(outdir / "summary.json", summary)

        plots_rel: Dict[str, str] = {}
        if not args.no_plots:
            plots_dir = outdir / "plots"
            plots_dir.mkdir(parents=True, exist_ok=True)
            abundance_png = plots_dir / "abundance_hist.png"
            per_sample_png = plots_dir / "reads_per_sample.png"

            totals = dict(zip(table.sequences, (int(x) for x in table.totals())))
            plot_abundance_hist(
                genuine_abundances=[totals[s] for s, v in verdicts.items() if not v.is_bimera],
                bimera_abundances=[totals[s] for s, v in verdicts.items() if v.is_bimera],
                out_png=abundance_png,
            )
            plot_reads_per_sample(per_sample=stats.per_sample, out_png=per_sample_png)
            plots_rel = {
                "abundance_hist": str(Path("plots") / abundance_png.name),
                "reads_per_sample": str(Path("plots") / per_sample_png.name),
            }

        report_path = render_report(
            outdir=outdir,
            version=__version__,
            input_path=str(input_path),
            n_samples=table.n_samples,
            options=asdict(opts),
            stats=stats.to_dict(),
            top_bimeras=_top_bimeras(table, verdicts, ids),
            plots=plots_rel,
        )

        logger.info("Report written: %s", report_path)
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=None if args.dry_run else log_path)


def cmd_merge(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)
    try:
        merged = merge_tables([read_table_tsv(p) for p in args.table])
        out = Path(args.out).expanduser().resolve()
        out.parent.mkdir(parents=True, exist_ok=True)
        write_table_tsv(merged, out)
        print(str(out))
        return 0
    except Exception as e:
        return _handle_error(e)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "detect":
        return cmd_detect(args)
    if args.cmd == "merge":
        return cmd_merge(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
