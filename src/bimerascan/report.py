from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, List

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>bimerascan Report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    .seq { font-family: monospace; font-size: 0.85em; word-break: break-all; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>bimerascan Report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Input</h3>
    <table>
      <tr><th>Table</th><td><code>{{ input_path }}</code></td></tr>
      <tr><th>Samples</th><td>{{ n_samples }}</td></tr>
      <tr><th>Variants</th><td>{{ stats.variants_total }}</td></tr>
      <tr><th>Reads</th><td>{{ stats.reads_total }}</td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Settings</h3>
    <table>
      <tr><th>Method</th><td><code>{{ options.consensus_method }}</code></td></tr>
      <tr><th>Min fold parent over abundance</th><td>{{ options.min_fold_parent_over_abundance }}</td></tr>
      <tr><th>Min abundance to test</th><td>{{ options.minimum_abundance_to_test }}</td></tr>
      <tr><th>Min overlap (bases)</th><td>{{ options.min_overlap_bases }}</td></tr>
      {% if options.consensus_method == "consensus" %}
      <tr><th>Min sample fraction</th><td>{{ options.min_sample_fraction }}</td></tr>
      <tr><th>Ignored negatives</th><td>{{ options.ignore_n_negatives }}</td></tr>
      {% endif %}
    </table>
  </div>
</div>

<h2>Chimera removal</h2>
<table>
  <tr><th>Bimeric variants</th><td>{{ stats.variants_bimera }} / {{ stats.variants_total }}</td></tr>
  <tr><th>Reads removed</th><td>{{ stats.reads_removed }}</td></tr>
  <tr><th>Reads kept</th><td>{{ stats.reads_kept }}</td></tr>
  <tr><th>Fraction of reads removed</th><td>
    {% if stats.fraction_removed is none %}undefined (no reads){% else %}{{ "%.4f"|format(stats.fraction_removed) }}{% endif %}
  </td></tr>
</table>

<h2>Per sample</h2>
<table>
  <tr><th>Sample</th><th>Input</th><th>Non-chimeric</th><th>Removed</th></tr>
  {% for row in stats.per_sample %}
  <tr><td>{{ row.sample }}</td><td>{{ row.reads_in }}</td><td>{{ row.reads_kept }}</td><td>{{ row.reads_removed }}</td></tr>
  {% endfor %}
</table>

{% if plots %}
<h2>Plots</h2>
<div class="grid">
  <div class="card">
    <h3>Abundance</h3>
    <img src="{{ plots.abundance_hist }}" alt="abundance histogram">
  </div>
  <div class="card">
    <h3>Reads per sample</h3>
    <img src="{{ plots.reads_per_sample }}" alt="reads per sample">
  </div>
</div>
{% endif %}

{% if top_bimeras %}
<h2>Most abundant bimeras</h2>
<table>
  <tr><th>Reads</th><th>Breakpoint</th><th>Sequence</th><th>Left parent</th><th>Right parent</th></tr>
  {% for b in top_bimeras %}
  <tr>
    <td>{{ b.abundance }}</td>
    <td>{{ b.breakpoint }}</td>
    <td class="seq">{{ b.sequence }}</td>
    <td>{{ b.left_id }}</td>
    <td>{{ b.right_id }}</td>
  </tr>
  {% endfor %}
</table>
{% endif %}

<h2>Outputs</h2>
<ul>
  <li><code>seqtab.nochim.tsv</code> (chimera-free sequence table)</li>
  <li><code>nonchim.fasta</code> (surviving variants, ready for taxonomy assignment)</li>
  <li><code>verdicts.tsv</code> (per-variant calls with parents and breakpoints)</li>
  <li><code>summary.json</code> (machine-readable summary)</li>
</ul>

<hr>
<p class="small">bimerascan {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    input_path: str,
    n_samples: int,
    options: Dict[str, Any],
    stats: Dict[str, Any],
    top_bimeras: List[Dict[str, Any]],
    plots: Dict[str, str],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        input_path=input_path,
        n_samples=n_samples,
        options=options,
        stats=stats,
        top_bimeras=top_bimeras,
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
