from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

METHOD_POOLED = "pooled"
METHOD_PER_SAMPLE = "per-sample"
METHOD_CONSENSUS = "consensus"

CONSENSUS_METHODS = (METHOD_POOLED, METHOD_PER_SAMPLE, METHOD_CONSENSUS)


@dataclass(frozen=True)
class Variant:
    """An amplicon sequence variant (one column of a sequence table).

    Attributes
    ----------
    sequence:
        Exact nucleotide string (A/C/G/T, uppercase). This is the identity of the variant.
    counts:
        Per-sample read counts, aligned with the table's sample order.
    abundance:
        Total reads across all samples.
    """

    sequence: str
    counts: Tuple[int, ...]
    abundance: int

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Variant):
            return NotImplemented
        return self.sequence == other.sequence

    def __hash__(self) -> int:
        return hash(self.sequence)

    def __len__(self) -> int:
        return len(self.sequence)


@dataclass(frozen=True)
class ParentCandidate:
    """Two parent sequences; ``left`` donates the prefix, ``right`` the suffix."""

    left: str
    right: str


@dataclass(frozen=True)
class Verdict:
    """Per-variant chimera call."""

    sequence: str
    is_bimera: bool
    parents: Optional[ParentCandidate] = None
    breakpoint: Optional[int] = None
    samples_flagged: Optional[int] = None
    samples_tested: Optional[int] = None

    @classmethod
    def genuine(cls, sequence: str, **kwargs: Optional[int]) -> "Verdict":
        return cls(sequence=sequence, is_bimera=False, **kwargs)

    @classmethod
    def bimera(cls, sequence: str, left: str, right: str, breakpoint: int, **kwargs: Optional[int]) -> "Verdict":
        return cls(
            sequence=sequence,
            is_bimera=True,
            parents=ParentCandidate(left=left, right=right),
            breakpoint=breakpoint,
            **kwargs,
        )

    @property
    def label(self) -> str:
        return "bimera" if self.is_bimera else "genuine"


@dataclass(frozen=True)
class BimeraOptions:
    """Detector settings.

    Attributes
    ----------
    min_fold_parent_over_abundance:
        Each parent must be at least this many times more abundant than the child
        (and strictly more abundant).
    minimum_abundance_to_test:
        Children below this count are not tested and are reported genuine.
    consensus_method:
        ``pooled`` (total abundances), ``per-sample`` (flagged in every sample where
        tested) or ``consensus`` (flagged in a sufficient fraction of samples).
    min_overlap_bases:
        Minimum number of bases each parent must contribute to the reconstruction.
    min_sample_fraction:
        ``consensus`` only: fraction of tested samples that must flag the variant.
    ignore_n_negatives:
        ``consensus`` only: this many unflagged samples are tolerated regardless of
        ``min_sample_fraction``.
    threads:
        Worker processes used to evaluate children.
    """

    min_fold_parent_over_abundance: float = 2.0
    minimum_abundance_to_test: int = 1
    consensus_method: str = METHOD_CONSENSUS
    min_overlap_bases: int = 1
    min_sample_fraction: float = 0.9
    ignore_n_negatives: int = 1
    threads: int = 1

    def validate(self) -> None:
        if self.min_fold_parent_over_abundance <= 0:
            raise ValueError("min_fold_parent_over_abundance must be > 0")
        if self.minimum_abundance_to_test < 0:
            raise ValueError("minimum_abundance_to_test must be >= 0")
        if self.consensus_method not in CONSENSUS_METHODS:
            raise ValueError(
                f"consensus_method must be one of {', '.join(CONSENSUS_METHODS)}; "
                f"got {self.consensus_method!r}"
            )
        if self.min_overlap_bases < 1:
            raise ValueError("min_overlap_bases must be >= 1")
        if not (0.0 < self.min_sample_fraction <= 1.0):
            raise ValueError("min_sample_fraction must be in (0, 1]")
        if self.ignore_n_negatives < 0:
            raise ValueError("ignore_n_negatives must be >= 0")
        if self.threads < 1:
            raise ValueError("threads must be >= 1")
