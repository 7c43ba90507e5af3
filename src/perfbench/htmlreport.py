"""Standalone HTML report with charts.

The page is built from the same Summary as report.md plus the raw sample
sequences. Samples and summary are embedded as JSON script blocks:

    meta-data    run header, thresholds and summary_to_dict output
    cpu-data     one row per CPU sample with its inclusion decision
    mem-data     one row per memory sample
    reason-data  FilterReason histogram

Summary tables are rendered server side, so the page is readable without
JavaScript. Charts are drawn by Chart.js, loaded from a CDN.
"""

import json
from html import escape
from pathlib import Path
from typing import Any, Sequence

import structlog

from perfbench.classify import SampleFilter
from perfbench.report import ReportMeta, Summary, summary_to_dict
from perfbench.samples import CpuSample, MemSample

log = structlog.get_logger()

HTML_REPORT_NAME = "report.html"
CHART_JS_URL = "https://cdn.jsdelivr.net/npm/chart.js@4.4.1/dist/chart.umd.min.js"


def cpu_series(samples: Sequence[CpuSample], sample_filter: SampleFilter) -> list[dict[str, Any]]:
    """CPU rows for the page, each tagged with the live inclusion decision."""
    return [
        {
            "ts": s.timestamp,
            "t": s.elapsed,
            "cpu": s.cpu_percent,
            "dmips": s.dmips,
            "windowMs": s.window_ms,
            "reason": s.reason.value,
            "included": sample_filter.included(s),
        }
        for s in samples
    ]


def mem_series(samples: Sequence[MemSample]) -> list[dict[str, Any]]:
    return [
        {
            "ts": s.timestamp,
            "t": s.elapsed,
            "pssMb": s.pss_mb,
            "rssMb": s.rss_mb,
            "pssKb": s.total_pss_kb,
            "rssKb": s.total_rss_kb,
        }
        for s in samples
    ]


def _json_block(element_id: str, data: Any) -> str:
    # No raw "<" may reach the script element
    payload = json.dumps(data, separators=(",", ":")).replace("<", "\\u003c")
    return f'<script type="application/json" id="{element_id}">{payload}</script>'


def _rows(pairs: Sequence[tuple[str, str]]) -> str:
    return "\n".join(
        f"<tr><th>{escape(label)}</th><td>{escape(value)}</td></tr>" for label, value in pairs
    )


def _meta_data(summary: Summary, meta: ReportMeta) -> dict[str, Any]:
    actual = summary.actual_seconds
    return {
        "testId": meta.test_id,
        "packageName": meta.package,
        "cpuMethod": meta.settings.method.value,
        "status": meta.status.value,
        "plannedMinutes": meta.planned_minutes,
        "actualSeconds": actual,
        "actualMinutes": round(actual / 60, 2) if actual is not None else None,
        "summary": summary_to_dict(summary, meta.settings),
    }


_STYLE = """\
body { font-family: system-ui, sans-serif; margin: 2rem auto; max-width: 1100px; color: #222; }
h1 { margin-bottom: 0.2rem; }
section { margin: 1.5rem 0; }
table { border-collapse: collapse; margin: 0.5rem 0; }
th, td { border: 1px solid #ccc; padding: 0.3rem 0.7rem; text-align: left; }
th { background: #f4f4f4; }
.chart { position: relative; height: 320px; }
.excluded { color: #999; }
.samples { max-height: 400px; overflow: auto; }
"""

_SCRIPT = """\
(function () {
  function data(id) {
    var el = document.getElementById(id);
    return el ? JSON.parse(el.textContent) : [];
  }
  var cpu = data("cpu-data");
  var mem = data("mem-data");
  var reasons = data("reason-data");
  if (typeof Chart === "undefined") { return; }

  var counted = cpu.filter(function (r) { return r.included; });
  new Chart(document.getElementById("cpu-chart"), {
    type: "line",
    data: {
      datasets: [
        { label: "CPU % (all samples)", borderColor: "#bbb", pointRadius: 2,
          data: cpu.map(function (r) { return { x: r.t, y: r.cpu }; }) },
        { label: "CPU % (counted)", borderColor: "#1f77b4", showLine: false,
          data: counted.map(function (r) { return { x: r.t, y: r.cpu }; }) }
      ]
    },
    options: { maintainAspectRatio: false, parsing: false,
               scales: { x: { type: "linear", title: { display: true, text: "Elapsed (s)" } },
                         y: { beginAtZero: true, title: { display: true, text: "CPU %" } } } }
  });

  new Chart(document.getElementById("mem-chart"), {
    type: "line",
    data: {
      datasets: [
        { label: "PSS (MB)", borderColor: "#2ca02c",
          data: mem.map(function (r) { return { x: r.t, y: r.pssMb }; }) },
        { label: "RSS (MB)", borderColor: "#ff7f0e",
          data: mem.map(function (r) { return { x: r.t, y: r.rssMb }; }) }
      ]
    },
    options: { maintainAspectRatio: false, parsing: false,
               scales: { x: { type: "linear", title: { display: true, text: "Elapsed (s)" } },
                         y: { title: { display: true, text: "MB" } } } }
  });

  new Chart(document.getElementById("reason-chart"), {
    type: "bar",
    data: {
      labels: Object.keys(reasons),
      datasets: [{ label: "CPU samples", backgroundColor: "#9467bd",
                   data: Object.values(reasons) }]
    },
    options: { maintainAspectRatio: false, plugins: { legend: { display: false } } }
  });
})();
"""


def render_html(
    summary: Summary,
    meta: ReportMeta,
    cpu_samples: Sequence[CpuSample],
    mem_samples: Sequence[MemSample],
) -> str:
    """Render the page. Every text value taken from the run is HTML-escaped."""
    settings = meta.settings
    cpu, mem, leak = summary.cpu, summary.memory, summary.leak
    actual = f"{summary.actual_seconds} seconds" if summary.actual_seconds is not None else "N/A"
    cpu_rows = cpu_series(cpu_samples, settings.sample_filter)
    reasons = {reason.value: count for reason, count in cpu.reason_counts.items()}

    header = _rows(
        [
            ("Test ID", meta.test_id),
            ("Package", meta.package),
            ("CPU Method", settings.method.value),
            ("Planned Duration", f"{meta.planned_minutes:g} minutes"),
            ("Actual Duration", actual),
            ("Test Status", meta.status.value),
        ]
    )
    thresholds = _rows(
        [
            ("Min CPU %", f"{settings.min_cpu_percent:g}"),
            ("Strict Window", "yes" if settings.strict_window else "no"),
            ("Window Range", f"{settings.window_min_ms}-{settings.window_max_ms} ms"),
            ("Leak Threshold", f"{settings.leak_threshold:g} MB/s"),
        ]
    )
    cpu_table = _rows(
        [
            ("Average", f"{cpu.avg_cpu:.2f}% ({cpu.avg_dmips} DMIPS)"),
            ("Peak", f"{cpu.peak_cpu:.2f}% ({cpu.peak_dmips} DMIPS)"),
            ("Minimum", f"{cpu.min_cpu:.2f}% ({cpu.min_dmips} DMIPS)"),
            (
                "Samples",
                f"{cpu.total} total, {cpu.included} counted, {cpu.excluded} filtered, "
                f"{cpu.unknown_window} unknown window",
            ),
        ]
    )
    mem_table = _rows(
        [
            ("PSS Average", f"{mem.avg_pss_mb:.2f} MB"),
            ("PSS Maximum", f"{mem.max_pss_mb:.2f} MB"),
            ("PSS Minimum", f"{mem.min_pss_mb:.2f} MB"),
            ("RSS Average", f"{mem.avg_rss_mb:.2f} MB"),
            ("RSS Maximum", f"{mem.max_rss_mb:.2f} MB"),
            ("RSS Minimum", f"{mem.min_rss_mb:.2f} MB"),
            ("Samples", str(mem.count)),
            ("Leak", leak.describe()),
        ]
    )
    sample_rows = "\n".join(
        f'<tr class="{"" if r["included"] else "excluded"}">'
        f'<td>{r["t"]}</td><td>{r["cpu"]:.2f}</td><td>{r["dmips"]}</td>'
        f'<td>{r["windowMs"]}</td><td>{escape(r["reason"])}</td>'
        f'<td>{"yes" if r["included"] else "no"}</td></tr>'
        for r in cpu_rows
    )

    return f"""\
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Performance Test Report - {escape(meta.package)}</title>
<style>
{_STYLE}</style>
<script src="{CHART_JS_URL}"></script>
</head>
<body>
<h1>Performance Test Report</h1>
<section>
<table>
{header}
</table>
<table>
{thresholds}
</table>
</section>
<section>
<h2>CPU</h2>
<table>
{cpu_table}
</table>
<div class="chart"><canvas id="cpu-chart"></canvas></div>
<h3>FilterReason Breakdown</h3>
<div class="chart"><canvas id="reason-chart"></canvas></div>
</section>
<section>
<h2>Memory</h2>
<table>
{mem_table}
</table>
<div class="chart"><canvas id="mem-chart"></canvas></div>
</section>
<section>
<h2>CPU Samples</h2>
<div class="samples">
<table>
<tr><th>Elapsed (s)</th><th>CPU %</th><th>DMIPS</th><th>Window (ms)</th><th>Reason</th>\
<th>Counted</th></tr>
{sample_rows}
</table>
</div>
</section>
{_json_block("meta-data", _meta_data(summary, meta))}
{_json_block("cpu-data", cpu_rows)}
{_json_block("mem-data", mem_series(mem_samples))}
{_json_block("reason-data", reasons)}
<script>
{_SCRIPT}</script>
</body>
</html>
"""


def write_html_report(
    summary: Summary,
    meta: ReportMeta,
    cpu_samples: Sequence[CpuSample],
    mem_samples: Sequence[MemSample],
    out: Path | None = None,
) -> Path:
    path = out or meta.test_dir / HTML_REPORT_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_html(summary, meta, cpu_samples, mem_samples), encoding="utf-8")
    log.info("html_report_written", path=str(path), cpu_samples=len(cpu_samples))
    return path
