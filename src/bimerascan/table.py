"""Sample-by-variant abundance tables.

A :class:`SequenceTable` is the input of chimera removal: rows are samples (in input
order), columns are amplicon sequence variants identified by their exact nucleotide
string. Tables are immutable in practice; every transformation returns a new table.

On-disk formats
---------------
- TSV in the DADA2 ``seqtab`` layout: a header row ``sample<TAB>SEQ1<TAB>SEQ2...``
  followed by one row of integer counts per sample. ``.gz`` is handled transparently.
  Tables exported by R ``write.table`` carry row names, so their header has no
  leading ``sample`` cell; those are read as well, with surrounding quotes removed.
- Dereplicated FASTA with ``;size=N`` annotations (vsearch/usearch convention),
  loaded as a single-sample table.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pysam

from .models import Variant
from .utils import open_textmaybe_gzip
from .validation import ValidationError, validate_table

logger = logging.getLogger(__name__)

_SIZE_RE = re.compile(r"(?:^|;)size=(\d+)")


class SequenceTable:
    """Read counts per (sample, variant)."""

    def __init__(
        self,
        samples: Sequence[str],
        sequences: Sequence[str],
        counts: object,
    ) -> None:
        arr = np.asarray(counts)
        if arr.size == 0 and len(sequences) == 0:
            arr = np.zeros((len(samples), 0), dtype=np.int64)
        elif arr.dtype.kind not in "iuf":
            raise ValidationError(f"Counts must be numeric; got dtype {arr.dtype}")

        validate_table(list(samples), list(sequences), arr)

        self._samples: List[str] = [str(s) for s in samples]
        self._sequences: List[str] = [str(s) for s in sequences]
        self._counts = arr.astype(np.int64)
        self._counts.setflags(write=False)
        self._index: Dict[str, int] = {s: j for j, s in enumerate(self._sequences)}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Mapping[str, int]]) -> "SequenceTable":
        """Build a table from ``{sample: {sequence: count}}``.

        Variants are ordered by first appearance; absent cells are zero.
        """
        samples = list(data.keys())
        sequences: List[str] = []
        seen: Dict[str, int] = {}
        for per_sample in data.values():
            for seq in per_sample:
                if seq not in seen:
                    seen[seq] = len(sequences)
                    sequences.append(seq)

        counts = np.zeros((len(samples), len(sequences)), dtype=np.int64)
        for i, per_sample in enumerate(data.values()):
            for seq, n in per_sample.items():
                try:
                    whole = n == int(n)
                except (TypeError, ValueError, OverflowError):
                    whole = False
                if not whole:
                    raise ValidationError(
                        f"Non-integer count {n!r} for sample {samples[i]}, variant {seq[:24]}"
                    )
                counts[i, seen[seq]] = int(n)
        return cls(samples, sequences, counts)

    @property
    def samples(self) -> List[str]:
        return list(self._samples)

    @property
    def sequences(self) -> List[str]:
        return list(self._sequences)

    @property
    def counts(self) -> np.ndarray:
        """Read-only samples x variants count matrix."""
        return self._counts

    @property
    def n_samples(self) -> int:
        return len(self._samples)

    @property
    def n_variants(self) -> int:
        return len(self._sequences)

    def __contains__(self, sequence: object) -> bool:
        return sequence in self._index

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SequenceTable):
            return NotImplemented
        return (
            self._samples == other._samples
            and self._sequences == other._sequences
            and np.array_equal(self._counts, other._counts)
        )

    def __repr__(self) -> str:
        return f"SequenceTable(samples={self.n_samples}, variants={self.n_variants}, reads={self.total_reads()})"

    def column(self, sequence: str) -> np.ndarray:
        try:
            return self._counts[:, self._index[sequence]]
        except KeyError:
            raise KeyError(f"Variant not in table: {sequence[:24]}") from None

    def totals(self) -> np.ndarray:
        """Total abundance per variant (column sums)."""
        return self._counts.sum(axis=0)

    def sample_totals(self) -> np.ndarray:
        return self._counts.sum(axis=1)

    def total_reads(self) -> int:
        return int(self._counts.sum())

    def variants(self) -> List[Variant]:
        totals = self.totals()
        return [
            Variant(
                sequence=seq,
                counts=tuple(int(x) for x in self._counts[:, j]),
                abundance=int(totals[j]),
            )
            for j, seq in enumerate(self._sequences)
        ]

    def drop_sequences(self, sequences: Iterable[str]) -> "SequenceTable":
        """Return a new table without the given variant columns."""
        drop = set(sequences)
        keep = [j for j, s in enumerate(self._sequences) if s not in drop]
        return SequenceTable(
            self._samples,
            [self._sequences[j] for j in keep],
            self._counts[:, keep],
        )


def merge_tables(tables: Sequence[SequenceTable]) -> SequenceTable:
    """Merge tables from several runs; columns are the union of variants.

    Sample names must be unique across the inputs.
    """
    if not tables:
        raise ValueError("No tables to merge.")

    samples: List[str] = []
    for t in tables:
        for s in t.samples:
            if s in samples:
                raise ValidationError(f"Duplicate sample name across tables: {s}")
            samples.append(s)

    sequences: List[str] = []
    col: Dict[str, int] = {}
    for t in tables:
        for seq in t.sequences:
            if seq not in col:
                col[seq] = len(sequences)
                sequences.append(seq)

    counts = np.zeros((len(samples), len(sequences)), dtype=np.int64)
    row = 0
    for t in tables:
        cols = [col[s] for s in t.sequences]
        counts[row : row + t.n_samples, cols] = t.counts
        row += t.n_samples

    logger.info("Merged %d tables: %d samples, %d variants", len(tables), len(samples), len(sequences))
    return SequenceTable(samples, sequences, counts)


def _unquote(field: str) -> str:
    if len(field) >= 2 and field[0] == field[-1] == '"':
        return field[1:-1]
    return field


def read_table_tsv(path: str | Path) -> SequenceTable:
    """Load a table in the DADA2 ``seqtab`` TSV layout.

    A header one field shorter than the data rows is the R row-name layout: every
    header cell is then a variant.
    """
    with open_textmaybe_gzip(path, "rt") as fh:
        header_line = fh.readline()
        if not header_line.strip():
            raise ValidationError(f"Empty sequence table: {path}")
        header = [_unquote(f) for f in header_line.rstrip("\r\n").split("\t")]
        sequences = header[1:]
        n_fields: Optional[int] = None

        samples: List[str] = []
        rows: List[List[int]] = []
        for lineno, line in enumerate(fh, start=2):
            line = line.rstrip("\r\n")
            if not line:
                continue
            fields = line.split("\t")
            if n_fields is None:
                if len(fields) == len(header) + 1:
                    sequences = header
                n_fields = len(sequences) + 1
            if len(fields) != n_fields:
                raise ValidationError(
                    f"{path}:{lineno}: expected {n_fields} fields, found {len(fields)}"
                )
            sample = _unquote(fields[0])
            row: List[int] = []
            for seq, raw in zip(sequences, fields[1:]):
                try:
                    row.append(int(raw))
                except ValueError:
                    raise ValidationError(
                        f"{path}:{lineno}: non-integer count {raw!r} for sample {sample}, "
                        f"variant {seq[:24]}"
                    ) from None
            samples.append(sample)
            rows.append(row)

    counts = np.array(rows, dtype=np.int64).reshape(len(samples), len(sequences))
    table = SequenceTable(samples, sequences, counts)
    logger.info("Loaded %s from %s", table, path)
    return table


def write_table_tsv(table: SequenceTable, path: str | Path) -> None:
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(["sample"] + table.sequences) + "\n")
        for sample, row in zip(table.samples, table.counts):
            fh.write("\t".join([sample] + [str(int(x)) for x in row]) + "\n")


def _parse_size(name: str, comment: Optional[str]) -> int:
    for text in (name, comment or ""):
        m = _SIZE_RE.search(text)
        if m:
            return int(m.group(1))
    return 1


def read_uniques_fasta(path: str | Path, *, sample: Optional[str] = None) -> SequenceTable:
    """Load a dereplicated FASTA (``>id;size=N``) as a single-sample table.

    Records without a size annotation count as one read; repeated sequences are summed.
    """
    if sample is None:
        sample = Path(path).name.split(".")[0]

    counts: Dict[str, int] = {}
    with pysam.FastxFile(str(path)) as fx:
        for entry in fx:
            seq = (entry.sequence or "").upper()
            counts[seq] = counts.get(seq, 0) + _parse_size(entry.name, entry.comment)

    table = SequenceTable.from_mapping({sample: counts})
    logger.info("Loaded %s from %s", table, path)
    return table


def write_variants_fasta(
    table: SequenceTable,
    path: str | Path,
    *,
    prefix: str = "ASV",
    names: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Write variants as FASTA with size annotations; return {sequence: record id}.

    Record ids come from ``names`` when given, else ``<prefix><column number>``.
    """
    ids: Dict[str, str] = {}
    totals = table.totals()
    with open_textmaybe_gzip(path, "wt") as fh:
        for j, seq in enumerate(table.sequences):
            rid = names[seq] if names is not None else f"{prefix}{j + 1}"
            ids[seq] = rid
            fh.write(f">{rid};size={int(totals[j])}\n{seq}\n")
    return ids
