"""bimerascan: de novo bimera removal for amplicon sequence variant tables.

Public API is intentionally small; most users should use the CLI:

    bimerascan detect --table seqtab.tsv --outdir results/

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
