from __future__ import annotations

import logging
from typing import List, Sequence

import numpy as np

logger = logging.getLogger(__name__)


_NUCLEOTIDES = frozenset("ACGT")


class ValidationError(ValueError):
    """Raised when a sequence table is malformed."""


def _short(seq: str, n: int = 24) -> str:
    if len(seq) <= n:
        return seq
    return seq[:n] + "..."


def check_sequence(seq: str) -> None:
    """Ensure a variant is a non-empty A/C/G/T string."""
    if not seq:
        raise ValidationError("Empty variant sequence in table header.")
    bad = set(seq) - _NUCLEOTIDES
    if bad:
        raise ValidationError(
            f"Variant {_short(seq)} contains non-ACGT symbols: {''.join(sorted(bad))}"
        )


def validate_table(samples: Sequence[str], sequences: Sequence[str], counts: np.ndarray) -> None:
    """Check table invariants; raise ValidationError naming the offending sample/variant."""
    if len(samples) == 0:
        raise ValidationError("Sequence table has no samples.")
    if counts.ndim != 2 or counts.shape != (len(samples), len(sequences)):
        raise ValidationError(
            f"Count matrix shape {counts.shape} does not match "
            f"{len(samples)} samples x {len(sequences)} variants."
        )

    seen_samples: set = set()
    for s in samples:
        if s in seen_samples:
            raise ValidationError(f"Duplicate sample name: {s}")
        seen_samples.add(s)

    seen_seqs: set = set()
    for seq in sequences:
        check_sequence(seq)
        if seq in seen_seqs:
            raise ValidationError(f"Duplicate variant sequence as distinct columns: {_short(seq)}")
        seen_seqs.add(seq)

    if counts.size == 0:
        return

    if not np.issubdtype(counts.dtype, np.integer):
        if not np.all(np.isfinite(counts)) or not np.all(np.equal(np.mod(counts, 1), 0)):
            i, j = _first_bad(~(np.isfinite(counts) & np.equal(np.mod(counts, 1), 0)))
            raise ValidationError(
                f"Non-integer count {counts[i, j]!r} for sample {samples[i]}, "
                f"variant {_short(sequences[j])}"
            )

    if np.any(counts < 0):
        i, j = _first_bad(counts < 0)
        raise ValidationError(
            f"Negative count {int(counts[i, j])} for sample {samples[i]}, variant {_short(sequences[j])}"
        )


def _first_bad(mask: np.ndarray) -> List[int]:
    idx = np.argwhere(mask)[0]
    return [int(idx[0]), int(idx[1])]
