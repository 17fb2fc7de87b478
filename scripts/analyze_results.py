#!/usr/bin/env python3
"""
Benchmark Report Generation with Visualization

Turns the results of a benchmark run into:
- A JSON report (complete: statistics, raw samples, warm summaries)
- A Markdown summary table (p95/p99, throughput and error columns)
- A cold-start chart (p95 Init Duration and first-hit latency per configuration)

Run directly to re-render the Markdown and chart for an existing JSON report:

Usage:
    python analyze_results.py reports/benchmark-2026-10-18T12-00-00-000Z.json
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import matplotlib.pyplot as plt

from benchmark_utils import (
    DEFAULT_ARRIVAL_RATE,
    DEFAULT_WARM_DURATION_SEC,
    REPORTS_DIR,
    BenchmarkConfig,
    BenchmarkResult,
)

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
)
log = logging.getLogger(__name__)

# =============================================================================
# Chart Styling Configuration
# =============================================================================

BAR_WIDTH_STANDARD = 0.35
CHART_DPI = 300
INIT_COLOR = "#28a745"
FIRST_HIT_COLOR = "#007bff"

MARKDOWN_HEADER = (
    "| Framework | Mem | Cold Init p95 (ms) | 1st Hit p95 (ms) | Warm p95 (ms) "
    "| Warm p99 (ms) | RPS | Errors |"
)
MARKDOWN_ALIGN = "|---|---:|---:|---:|---:|---:|---:|---:|"


# =============================================================================
# Output Paths
# =============================================================================


def report_timestamp(now: datetime | None = None) -> str:
    """
    Filesystem-safe ISO-8601 UTC timestamp.

    Example:
        >>> report_timestamp(datetime(2026, 10, 18, 9, 5, 7, 123000, tzinfo=timezone.utc))
        '2026-10-18T09-05-07-123Z'
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    iso = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


def create_output_directory(reports_dir: str | Path) -> Path:
    output_dir = Path(reports_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# =============================================================================
# Report Writers
# =============================================================================


def format_cell(value: Any) -> str:
    """Render a table cell; missing values become empty cells."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def generate_markdown(
    results: list[BenchmarkResult],
    stamp: str,
    warm_duration_sec: int,
    arrival_rate: int,
) -> str:
    """
    Build the Markdown summary for a run.

    Only p95 cold-start figures and the warm summary columns are included;
    the JSON report carries the full statistics.
    """
    lines = [f"# Lambda Benchmark ({stamp})", "", MARKDOWN_HEADER, MARKDOWN_ALIGN]

    for r in results:
        warm = r.warm_summary
        cells = [
            r.framework,
            r.memory_mb,
            r.cold_init_stats["p95"],
            r.cold_first_stats["p95"],
            warm.p95,
            warm.p99,
            warm.rps,
            warm.errors,
        ]
        lines.append("| " + " | ".join(format_cell(c) for c in cells) + " |")

    lines += [
        "",
        "## Notes",
        "- Cold start stats are computed from CloudWatch `Init Duration` and client-measured first response.",
        f"- Warm stats from Artillery: duration={warm_duration_sec}s, arrivalRate={arrival_rate}/s.",
    ]
    return "\n".join(lines)


def write_json_report(results: list[BenchmarkResult], output_dir: Path, stamp: str) -> Path:
    json_path = output_dir / f"benchmark-{stamp}.json"
    with open(json_path, "w") as f:
        json.dump([r.to_dict() for r in results], f, indent=2)
    return json_path


def write_markdown_report(
    results: list[BenchmarkResult],
    output_dir: Path,
    stamp: str,
    warm_duration_sec: int,
    arrival_rate: int,
) -> Path:
    md_path = output_dir / f"benchmark-{stamp}.md"
    with open(md_path, "w") as f:
        f.write(generate_markdown(results, stamp, warm_duration_sec, arrival_rate))
    return md_path


def create_cold_start_chart(results: list[BenchmarkResult], output_dir: Path, stamp: str) -> Path | None:
    """
    Create a grouped bar chart of p95 Init Duration and p95 first-hit latency.

    Returns:
        Path to the PNG, or None when no configuration has cold-start data
    """
    labels = [f"{r.framework}\n{r.memory_mb}MB" for r in results]
    init_p95 = [r.cold_init_stats["p95"] or 0 for r in results]
    first_p95 = [r.cold_first_stats["p95"] or 0 for r in results]

    if not any(init_p95) and not any(first_p95):
        return None

    fig, ax = plt.subplots(figsize=(max(8, len(results) * 1.5), 6))
    x = range(len(results))
    width = BAR_WIDTH_STANDARD

    bars1 = ax.bar(
        [i - width / 2 for i in x],
        init_p95,
        width,
        label="Init Duration p95",
        color=INIT_COLOR,
        alpha=0.8,
        edgecolor="black",
    )
    bars2 = ax.bar(
        [i + width / 2 for i in x],
        first_p95,
        width,
        label="First hit p95",
        color=FIRST_HIT_COLOR,
        alpha=0.8,
        edgecolor="black",
    )

    for bars in [bars1, bars2]:
        for bar in bars:
            height = bar.get_height()
            if height > 0:
                ax.text(
                    bar.get_x() + bar.get_width() / 2.0,
                    height,
                    f"{height:.0f}",
                    ha="center",
                    va="bottom",
                    fontsize=9,
                )

    ax.set_xlabel("Framework / Memory", fontsize=12, fontweight="bold")
    ax.set_ylabel("Latency (ms)", fontsize=12, fontweight="bold")
    ax.set_title("Cold Start Latency (p95)", fontsize=14, fontweight="bold")
    ax.set_xticks(list(x))
    ax.set_xticklabels(labels)
    ax.legend()
    ax.grid(axis="y", alpha=0.3)

    chart_path = output_dir / f"benchmark-{stamp}-cold-start.png"
    plt.tight_layout()
    plt.savefig(chart_path, dpi=CHART_DPI)
    plt.close(fig)
    return chart_path


def write_reports(
    results: list[BenchmarkResult], config: BenchmarkConfig, now: datetime | None = None
) -> dict[str, Path | None]:
    """
    Write the JSON, Markdown and chart artifacts for a run.

    Returns:
        Dictionary with "json", "markdown" and "chart" paths (chart may be None)
    """
    output_dir = create_output_directory(config.reports_dir)
    stamp = report_timestamp(now)

    log.info(f"Writing reports to {output_dir}/")
    return {
        "json": write_json_report(results, output_dir, stamp),
        "markdown": write_markdown_report(
            results, output_dir, stamp, config.warm_duration_sec, config.arrival_rate
        ),
        "chart": create_cold_start_chart(results, output_dir, stamp),
    }


# =============================================================================
# Re-rendering Existing Reports
# =============================================================================


def load_results(json_path: str | Path) -> list[BenchmarkResult]:
    with open(json_path) as f:
        return [BenchmarkResult.from_dict(item) for item in json.load(f)]


def stamp_from_path(json_path: Path) -> str:
    return json_path.stem.removeprefix("benchmark-")


def main(argv: list[str] | None = None) -> int:
    """Re-render Markdown and chart next to an existing JSON report."""
    parser = argparse.ArgumentParser(
        description="Regenerate Markdown summary and chart from a benchmark JSON report"
    )
    parser.add_argument("report", help=f"Path to a benchmark-<timestamp>.json file (under {REPORTS_DIR}/)")
    # The JSON report does not record the warm-phase settings
    parser.add_argument(
        "--duration",
        type=int,
        help=f"Warm duration used for the run, noted in the summary (default: {DEFAULT_WARM_DURATION_SEC})",
    )
    parser.add_argument(
        "--arrival-rate",
        type=int,
        help=f"Arrival rate used for the run, noted in the summary (default: {DEFAULT_ARRIVAL_RATE})",
    )
    args = parser.parse_args(argv)

    json_path = Path(args.report)
    if not json_path.exists():
        log.error(f"Report not found: {json_path}")
        return 1

    results = load_results(json_path)
    log.info(f"Loaded {len(results)} results from {json_path}")

    if not results:
        log.error("No results found in this report.")
        return 1

    if args.duration is None or args.arrival_rate is None:
        log.warning(
            "Warm settings are not stored in the JSON report; pass --duration and --arrival-rate "
            "to match the benchmark run. Falling back to defaults for the Notes section."
        )
    duration = DEFAULT_WARM_DURATION_SEC if args.duration is None else args.duration
    arrival_rate = DEFAULT_ARRIVAL_RATE if args.arrival_rate is None else args.arrival_rate

    output_dir = json_path.parent
    stamp = stamp_from_path(json_path)

    md_path = write_markdown_report(results, output_dir, stamp, duration, arrival_rate)
    chart_path = create_cold_start_chart(results, output_dir, stamp)

    log.info(f"- Summary: {md_path}")
    if chart_path:
        log.info(f"- Chart: {chart_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
