from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Sequence

import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)


def plot_abundance_hist(
    *,
    genuine_abundances: Sequence[int],
    bimera_abundances: Sequence[int],
    out_png: str | Path,
    title: str = "Variant abundance",
    nbins: int = 30,
) -> None:
    """Overlayed log10 abundance histograms of genuine and bimeric variants.

    Zero-abundance variants are left out (log scale).
    """
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    g = np.log10([a for a in genuine_abundances if a > 0])
    b = np.log10([a for a in bimera_abundances if a > 0])
    both = np.concatenate([g, b]) if (g.size + b.size) else np.array([0.0])
    lo = float(both.min())
    hi = float(both.max())
    if hi <= lo:
        hi = lo + 1.0
    edges = np.linspace(lo, hi, nbins + 1)

    plt.figure()
    plt.hist(g, bins=edges, alpha=0.6, label=f"Genuine ({g.size})")
    plt.hist(b, bins=edges, alpha=0.6, label=f"Bimera ({b.size})")
    plt.xlabel("log10(total reads)")
    plt.ylabel("Variant count")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_reads_per_sample(
    *,
    per_sample: List[Dict[str, object]],
    out_png: str | Path,
    title: str = "Reads kept vs removed per sample",
    max_samples: int = 60,
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    rows = per_sample[:max_samples]
    if len(per_sample) > max_samples:
        logger.info("Plotting first %d of %d samples", max_samples, len(per_sample))

    labels = [str(r["sample"]) for r in rows]
    kept = [int(r["reads_kept"]) for r in rows]  # type: ignore[call-overload]
    removed = [int(r["reads_removed"]) for r in rows]  # type: ignore[call-overload]
    xs = range(len(rows))

    plt.figure(figsize=(max(6.4, 0.3 * len(rows)), 4.8))
    plt.bar(xs, kept, label="Kept")
    plt.bar(xs, removed, bottom=kept, label="Removed (bimera)")
    plt.ylabel("Read count")
    plt.title(title)
    plt.xticks(xs, labels, rotation=45, ha="right")
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
