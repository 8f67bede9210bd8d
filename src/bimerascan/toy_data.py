from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List

from .table import SequenceTable, write_table_tsv, write_variants_fasta
from .utils import ensure_outdir, write_json

_BASES = "ACGT"


def _random_seq(rng: random.Random, n: int) -> str:
    return "".join(rng.choice(_BASES) for _ in range(n))


def _mutate_base(base: str) -> str:
    for alt in _BASES:
        if alt != base:
            return alt
    return "A"


def _point_mutant(seq: str, pos: int) -> str:
    return seq[:pos] + _mutate_base(seq[pos]) + seq[pos + 1 :]


def make_toy_table(*, seed: int = 7, length: int = 120, n_samples: int = 3) -> tuple[SequenceTable, Dict[str, List[str]]]:
    """Synthetic amplicon table with known parents, bimeras and one-off mutants.

    Returns the table and the ground truth ``{"parents": [...], "bimeras": [...], "mutants": [...]}``.
    """
    rng = random.Random(seed)

    parents = [_random_seq(rng, length) for _ in range(4)]

    bimeras: List[str] = []
    for left, right, bp in [(0, 1, length // 2), (2, 3, length // 3), (1, 2, 2 * length // 3)]:
        bimeras.append(parents[left][:bp] + parents[right][bp:])

    # single-substitution mutants are not reconstructable from two parents
    mutants = [_point_mutant(parents[0], length // 4), _point_mutant(parents[3], length // 2 + 5)]

    samples = [f"S{i + 1}" for i in range(n_samples)]
    data: Dict[str, Dict[str, int]] = {}
    for s in samples:
        per: Dict[str, int] = {}
        for p in parents:
            per[p] = rng.randint(400, 2000)
        for b in bimeras:
            per[b] = rng.randint(10, 60)
        for m in mutants:
            per[m] = rng.randint(3, 30)
        data[s] = per

    truth = {"parents": parents, "bimeras": bimeras, "mutants": mutants}
    return SequenceTable.from_mapping(data), truth


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Write a small sequence table suitable for quick demos/tests.

    The outputs include:
    - seqtab.tsv (3 samples, DADA2 seqtab layout)
    - uniques.fasta (pooled dereplicated variants with ``;size=`` annotations)
    - truth.json (which variants are parents, bimeras and mutants)

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)

    table, truth = make_toy_table()

    seqtab = outdir_p / "seqtab.tsv"
    write_table_tsv(table, seqtab)

    pooled = SequenceTable(["pooled"], table.sequences, table.totals().reshape(1, -1))
    fasta = outdir_p / "uniques.fasta"
    write_variants_fasta(pooled, fasta, prefix="uniq")

    truth_path = outdir_p / "truth.json"
    write_json(truth_path, truth)

    summary = {
        "seqtab": str(seqtab),
        "uniques_fasta": str(fasta),
        "truth": str(truth_path),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
