from __future__ import annotations

import logging
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .models import METHOD_PER_SAMPLE, METHOD_POOLED, BimeraOptions, Verdict
from .table import SequenceTable
from .utils import chunked, safe_fraction

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64


def _encode(seq: str) -> np.ndarray:
    return np.frombuffer(seq.encode("ascii"), dtype=np.uint8)


def match_lengths(child: np.ndarray, parent: np.ndarray) -> Tuple[int, int]:
    """Length of the longest shared prefix and longest shared suffix of two equal-length sequences."""
    mism = np.flatnonzero(child != parent)
    n = len(child)
    if mism.size == 0:
        return n, n
    return int(mism[0]), int(n - 1 - mism[-1])


def first_breakpoint(n: int, prefix_len: int, suffix_len: int, min_overlap: int) -> Optional[int]:
    """Smallest b in [min_overlap, n - min_overlap] with b <= prefix_len and n - b <= suffix_len."""
    lo = max(min_overlap, n - suffix_len)
    hi = min(prefix_len, n - min_overlap)
    if lo <= hi:
        return lo
    return None


def find_reconstruction(
    child: str,
    parents: Sequence[str],
    *,
    min_overlap_bases: int = 1,
    encoded: Optional[Dict[str, np.ndarray]] = None,
) -> Optional[Tuple[str, str, int]]:
    """Find the first exact two-parent reconstruction of ``child``.

    Pairs are enumerated with ``left`` as the outer loop and ``right`` as the inner loop,
    both in the order given by ``parents``; breakpoints ascend. Returns
    ``(left, right, breakpoint)`` with ``child[:b] == left[:b]`` and ``child[b:] == right[b:]``,
    or None. Parents of a different length, or identical to the child, are ignored.
    """
    n = len(child)
    if n < 2 * min_overlap_bases:
        return None

    c = _encode(child)
    matches: List[Tuple[str, int, int]] = []
    for p in parents:
        if len(p) != n or p == child:
            continue
        arr = encoded[p] if encoded is not None and p in encoded else _encode(p)
        lp, ls = match_lengths(c, arr)
        matches.append((p, lp, ls))

    for left, lp, _ in matches:
        if lp < min_overlap_bases:
            continue
        for right, _, ls in matches:
            if right == left:
                continue
            b = first_breakpoint(n, lp, ls, min_overlap_bases)
            if b is not None:
                return left, right, b
    return None


def is_bimera(sequence: str, parents: Sequence[str], *, min_overlap_bases: int = 1) -> bool:
    """True if ``sequence`` is an exact join of a prefix of one parent and a suffix of another."""
    return find_reconstruction(sequence, parents, min_overlap_bases=min_overlap_bases) is not None


@dataclass
class _DetectionContext:
    """Read-only state shared by all child evaluations (picklable for worker processes)."""

    sequences: List[str]
    counts: np.ndarray
    options: BimeraOptions
    _encoded: Optional[Dict[str, np.ndarray]] = field(default=None, repr=False)
    _lengths: Optional[np.ndarray] = field(default=None, repr=False)
    _totals: Optional[np.ndarray] = field(default=None, repr=False)

    def __getstate__(self) -> Dict[str, object]:
        return {"sequences": self.sequences, "counts": self.counts, "options": self.options}

    def __setstate__(self, state: Dict[str, object]) -> None:
        self.sequences = state["sequences"]  # type: ignore[assignment]
        self.counts = state["counts"]  # type: ignore[assignment]
        self.options = state["options"]  # type: ignore[assignment]
        self._encoded = None
        self._lengths = None
        self._totals = None

    @property
    def totals(self) -> np.ndarray:
        if self._totals is None:
            self._totals = self.counts.sum(axis=0)
        return self._totals

    @property
    def encoded(self) -> Dict[str, np.ndarray]:
        if self._encoded is None:
            self._encoded = {s: _encode(s) for s in self.sequences}
        return self._encoded

    @property
    def lengths(self) -> np.ndarray:
        if self._lengths is None:
            self._lengths = np.array([len(s) for s in self.sequences], dtype=np.int64)
        return self._lengths


def candidate_parents(ctx: _DetectionContext, j: int, abundances: np.ndarray) -> List[str]:
    """Parents eligible for child ``j`` under ``abundances``, most abundant first.

    Eligible: not the child, same length, strictly more abundant and at least
    ``min_fold_parent_over_abundance`` times the child's abundance.
    """
    a = abundances[j]
    fold = ctx.options.min_fold_parent_over_abundance
    mask = (abundances > a) & (abundances >= fold * a) & (abundances > 0) & (ctx.lengths == ctx.lengths[j])
    mask[j] = False
    idx = np.flatnonzero(mask)
    ordered = sorted(idx.tolist(), key=lambda k: (-int(abundances[k]), ctx.sequences[k]))
    return [ctx.sequences[k] for k in ordered]


def _test_in_pool(ctx: _DetectionContext, j: int, abundances: np.ndarray) -> Optional[Tuple[str, str, int]]:
    parents = candidate_parents(ctx, j, abundances)
    if len(parents) < 2:
        return None
    return find_reconstruction(
        ctx.sequences[j],
        parents,
        min_overlap_bases=ctx.options.min_overlap_bases,
        encoded=ctx.encoded,
    )


def consensus_call(
    flagged: int,
    tested: int,
    *,
    method: str,
    min_sample_fraction: float,
    ignore_n_negatives: int,
) -> bool:
    """Aggregate per-sample calls into one verdict.

    ``per-sample``: flagged in every tested sample.
    ``consensus``: flagged in at least ``min_sample_fraction`` of tested samples, or
    unflagged in no more than ``ignore_n_negatives`` of them.
    """
    if tested == 0 or flagged == 0:
        return False
    if method == METHOD_PER_SAMPLE:
        return flagged == tested
    return flagged >= tested * min_sample_fraction or flagged >= tested - ignore_n_negatives


def evaluate_child(ctx: _DetectionContext, j: int) -> Verdict:
    """Verdict for column ``j`` of the table."""
    opts = ctx.options
    seq = ctx.sequences[j]
    min_count = max(1, int(opts.minimum_abundance_to_test))

    if opts.consensus_method == METHOD_POOLED:
        totals = ctx.totals
        if totals[j] < min_count:
            return Verdict.genuine(seq)
        hit = _test_in_pool(ctx, j, totals)
        if hit is None:
            return Verdict.genuine(seq)
        return Verdict.bimera(seq, hit[0], hit[1], hit[2])

    tested = 0
    flagged = 0
    first_hit: Optional[Tuple[str, str, int]] = None
    for s in range(ctx.counts.shape[0]):
        row = ctx.counts[s]
        if row[j] < min_count:
            continue
        tested += 1
        hit = _test_in_pool(ctx, j, row)
        if hit is not None:
            flagged += 1
            if first_hit is None:
                first_hit = hit

    call = consensus_call(
        flagged,
        tested,
        method=opts.consensus_method,
        min_sample_fraction=opts.min_sample_fraction,
        ignore_n_negatives=opts.ignore_n_negatives,
    )
    if call and first_hit is not None:
        return Verdict.bimera(
            seq, first_hit[0], first_hit[1], first_hit[2], samples_flagged=flagged, samples_tested=tested
        )
    return Verdict.genuine(seq, samples_flagged=flagged, samples_tested=tested)


def _evaluate_chunk(ctx: _DetectionContext, columns: List[int]) -> List[Tuple[int, Verdict]]:
    return [(j, evaluate_child(ctx, j)) for j in columns]


def detect(
    table: SequenceTable,
    options: Optional[BimeraOptions] = None,
    *,
    progress: bool = True,
) -> Dict[str, Verdict]:
    """Call every variant of ``table`` genuine or bimera.

    Returns a mapping keyed by sequence, in table column order. The table is not modified.
    """
    opts = options if options is not None else BimeraOptions()
    opts.validate()
    t0 = time.time()

    ctx = _DetectionContext(sequences=table.sequences, counts=table.counts, options=opts)
    totals = table.totals()
    # most abundant children first, ties by sequence
    order = sorted(range(table.n_variants), key=lambda j: (-int(totals[j]), ctx.sequences[j]))

    results: Dict[int, Verdict] = {}
    if opts.threads > 1 and table.n_variants > _CHUNK_SIZE:
        with ProcessPoolExecutor(max_workers=opts.threads) as pool:
            futures = [pool.submit(_evaluate_chunk, ctx, chunk) for chunk in chunked(order, _CHUNK_SIZE)]
            it = as_completed(futures)
            if progress:
                it = tqdm(it, total=len(futures), unit="chunk", desc="Testing variants")
            for fut in it:
                for j, verdict in fut.result():
                    results[j] = verdict
    else:
        it_cols = order
        if progress:
            it_cols = tqdm(order, unit="variant", desc="Testing variants")
        for j in it_cols:
            results[j] = evaluate_child(ctx, j)

    verdicts = {ctx.sequences[j]: results[j] for j in range(table.n_variants)}
    n_bim = sum(1 for v in verdicts.values() if v.is_bimera)
    logger.info(
        "Identified %d bimeras out of %d input sequences (method=%s) in %.2fs",
        n_bim,
        len(verdicts),
        opts.consensus_method,
        time.time() - t0,
    )
    return verdicts


@dataclass(frozen=True)
class RemovalStats:
    """Read and variant accounting for one chimera-removal run.

    ``fraction_removed`` is None when the table holds no reads.
    """

    variants_total: int
    variants_bimera: int
    reads_total: int
    reads_removed: int
    reads_kept: int
    fraction_removed: Optional[float]
    per_sample: List[Dict[str, object]]

    def to_dict(self) -> Dict[str, object]:
        return {
            "variants_total": self.variants_total,
            "variants_bimera": self.variants_bimera,
            "reads_total": self.reads_total,
            "reads_removed": self.reads_removed,
            "reads_kept": self.reads_kept,
            "fraction_removed": self.fraction_removed,
            "per_sample": [dict(x) for x in self.per_sample],
        }


def remove_bimeras(table: SequenceTable, verdicts: Dict[str, Verdict]) -> Tuple[SequenceTable, RemovalStats]:
    """Drop bimera columns; return the new table and read accounting.

    Variants without a verdict are kept.
    """
    bimeras = [s for s in table.sequences if s in verdicts and verdicts[s].is_bimera]
    filtered = table.drop_sequences(bimeras)

    reads_in = table.sample_totals()
    reads_kept = filtered.sample_totals()

    per_sample: List[Dict[str, object]] = []
    for s, n_in, n_kept in zip(table.samples, reads_in, reads_kept):
        per_sample.append(
            {
                "sample": s,
                "reads_in": int(n_in),
                "reads_kept": int(n_kept),
                "reads_removed": int(n_in - n_kept),
                "fraction_removed": safe_fraction(int(n_in - n_kept), int(n_in)),
            }
        )

    total = table.total_reads()
    kept = filtered.total_reads()
    stats = RemovalStats(
        variants_total=table.n_variants,
        variants_bimera=len(bimeras),
        reads_total=total,
        reads_removed=total - kept,
        reads_kept=kept,
        fraction_removed=safe_fraction(total - kept, total),
        per_sample=per_sample,
    )
    if stats.fraction_removed is not None:
        logger.info(
            "Removed %d bimeric variants (%.2f%% of reads)",
            stats.variants_bimera,
            100.0 * stats.fraction_removed,
        )
    return filtered, stats
