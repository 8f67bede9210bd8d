from __future__ import annotations

import gzip
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional, TextIO, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)


def safe_fraction(num: float, denom: float) -> Optional[float]:
    # None marks an undefined ratio (empty denominator)
    if denom == 0:
        return None
    return float(num) / float(denom)


def chunked(iterable: Iterable[T], n: int) -> Iterable[list[T]]:
    chunk: list[T] = []
    for item in iterable:
        chunk.append(item)
        if len(chunk) >= n:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
