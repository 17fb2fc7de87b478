#!/usr/bin/env python3
"""
Shared utilities for benchmark orchestration and reporting.

This module contains constants, data model types, configuration loading and
the order-statistics helper used by benchmark_orchestrator.py, load_test.py
and analyze_results.py.
"""

import math
import os
from dataclasses import dataclass, field
from typing import Any

# =============================================================================
# Deployment Defaults
# =============================================================================

DEFAULT_REGION = "ap-southeast-1"
STACK_NAME = "LambdaBenchStack"

# Order matters: functions are benchmarked memory-major, framework-minor
FRAMEWORKS = ["fastify", "express", "nest"]
DEFAULT_MEMORY_SIZES = [512, 1024]

INFRA_DIR = "infra"
OUTPUTS_FILE = "cdk-outputs.json"
ARTILLERY_TEMPLATE = "bench/artillery.yml"
REPORTS_DIR = "reports"

# =============================================================================
# Timing Configuration
# =============================================================================

DEFAULT_COLD_START_RUNS = 10
DEFAULT_WARM_DURATION_SEC = 120
DEFAULT_ARRIVAL_RATE = 10

LOG_INGEST_DELAY_SECONDS = 1.5  # CloudWatch ingestion lag before the first log query
COLD_START_COOLDOWN_SECONDS = 1.0
CLOCK_SKEW_MARGIN_SECONDS = 1.0  # Host clock vs CloudWatch event timestamps
HTTP_TIMEOUT_SECONDS = 30


class StackOutputError(RuntimeError):
    """Raised when deployment outputs are missing an expected key."""


# =============================================================================
# Retry Policy
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Fixed-count, fixed-delay polling budget."""

    max_attempts: int
    delay_seconds: float


UPDATE_RETRY = RetryPolicy(max_attempts=60, delay_seconds=2.0)
INIT_DURATION_RETRY = RetryPolicy(max_attempts=12, delay_seconds=1.0)


# =============================================================================
# Data Model
# =============================================================================


@dataclass(frozen=True, slots=True)
class FunctionMeta:
    """One deployed handler: framework, memory size, invoke URL and function name."""

    framework: str
    memory_mb: int
    url: str
    name: str

    @property
    def config_id(self) -> str:
        return make_config_id(self.framework, self.memory_mb)


@dataclass(slots=True)
class ColdStartSample:
    init_duration_ms: float | None
    first_response_ms: float | None


@dataclass(slots=True)
class WarmSummary:
    """
    Warm-phase summary scraped from load generator output.

    Every numeric field is optional: a value the output did not contain is
    None, never zero.
    """

    p50: float | None = None
    p95: float | None = None
    p99: float | None = None
    rps: float | None = None
    errors: int | None = None
    raw: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "p50": self.p50,
            "p95": self.p95,
            "p99": self.p99,
            "rps": self.rps,
            "errors": self.errors,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "WarmSummary":
        data = data or {}
        return cls(
            p50=data.get("p50"),
            p95=data.get("p95"),
            p99=data.get("p99"),
            rps=data.get("rps"),
            errors=data.get("errors"),
            raw=data.get("raw") or "",
        )


@dataclass(slots=True)
class BenchmarkResult:
    """Cold-start samples and warm summary for one (framework, memory) configuration."""

    framework: str
    memory_mb: int
    samples: list[ColdStartSample] = field(default_factory=list)
    warm_summary: WarmSummary = field(default_factory=WarmSummary)

    @property
    def cold_init_samples(self) -> list[float]:
        return [s.init_duration_ms for s in self.samples if s.init_duration_ms is not None]

    @property
    def cold_first_samples(self) -> list[float]:
        return [s.first_response_ms for s in self.samples if s.first_response_ms is not None]

    @property
    def cold_init_stats(self) -> dict[str, Any]:
        return calculate_statistics(self.cold_init_samples)

    @property
    def cold_first_stats(self) -> dict[str, Any]:
        return calculate_statistics(self.cold_first_samples)

    def to_dict(self) -> dict[str, Any]:
        return {
            "framework": self.framework,
            "memory": self.memory_mb,
            "cold_init_stats": self.cold_init_stats,
            "cold_first_stats": self.cold_first_stats,
            "cold_init_samples": self.cold_init_samples,
            "cold_first_samples": self.cold_first_samples,
            "warm_summary": self.warm_summary.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BenchmarkResult":
        """
        Rebuild a result from its JSON report entry.

        The report stores init and first-hit samples as separate lists with
        missing values dropped, so samples are re-paired by position only as
        far as both lists reach.
        """
        inits = list(data.get("cold_init_samples") or [])
        firsts = list(data.get("cold_first_samples") or [])
        samples = []
        for i in range(max(len(inits), len(firsts))):
            samples.append(
                ColdStartSample(
                    init_duration_ms=inits[i] if i < len(inits) else None,
                    first_response_ms=firsts[i] if i < len(firsts) else None,
                )
            )
        return cls(
            framework=data["framework"],
            memory_mb=int(data["memory"]),
            samples=samples,
            warm_summary=WarmSummary.from_dict(data.get("warm_summary")),
        )


# =============================================================================
# Configuration
# =============================================================================


def parse_memory_sizes(value: str) -> list[int]:
    """
    Parse a comma-separated memory size list such as "512, 1024".

    Raises:
        ValueError: If any entry is not an integer
    """
    return [int(part.strip()) for part in value.split(",") if part.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw.strip())


@dataclass(slots=True)
class BenchmarkConfig:
    """Configuration for benchmark execution."""

    region: str = DEFAULT_REGION
    cold_start_runs: int = DEFAULT_COLD_START_RUNS
    warm_duration_sec: int = DEFAULT_WARM_DURATION_SEC
    arrival_rate: int = DEFAULT_ARRIVAL_RATE
    memory_sizes: list[int] = field(default_factory=lambda: list(DEFAULT_MEMORY_SIZES))
    frameworks: list[str] = field(default_factory=lambda: list(FRAMEWORKS))
    stack_name: str = STACK_NAME
    infra_dir: str = INFRA_DIR
    outputs_file: str = OUTPUTS_FILE
    template_path: str = ARTILLERY_TEMPLATE
    reports_dir: str = REPORTS_DIR
    update_retry: RetryPolicy = UPDATE_RETRY
    init_retry: RetryPolicy = INIT_DURATION_RETRY
    log_ingest_delay: float = LOG_INGEST_DELAY_SECONDS
    cooldown: float = COLD_START_COOLDOWN_SECONDS
    clock_skew_margin: float = CLOCK_SKEW_MARGIN_SECONDS
    http_timeout: float = HTTP_TIMEOUT_SECONDS
    run_warm: bool = True

    @classmethod
    def from_env(cls) -> "BenchmarkConfig":
        """
        Build configuration from environment variables.

        Reads AWS_REGION, COLD_START_RUNS, WARM_DURATION_SEC, ARRIVAL_RATE and
        MEM_SIZES, falling back to the documented defaults.

        Raises:
            ValueError: If a numeric variable is malformed
        """
        mem_sizes = os.environ.get("MEM_SIZES")
        return cls(
            region=os.environ.get("AWS_REGION") or DEFAULT_REGION,
            cold_start_runs=_env_int("COLD_START_RUNS", DEFAULT_COLD_START_RUNS),
            warm_duration_sec=_env_int("WARM_DURATION_SEC", DEFAULT_WARM_DURATION_SEC),
            arrival_rate=_env_int("ARRIVAL_RATE", DEFAULT_ARRIVAL_RATE),
            memory_sizes=(
                parse_memory_sizes(mem_sizes) if mem_sizes else list(DEFAULT_MEMORY_SIZES)
            ),
        )


# =============================================================================
# Statistics Utilities
# =============================================================================

PERCENTILES = {"p50": 0.50, "p95": 0.95, "p99": 0.99}


def percentile(sorted_vals: list[float], p: float) -> float | None:
    """
    Nearest-rank percentile: the value at index floor((n - 1) * p).

    Args:
        sorted_vals: List of values sorted in ascending order
        p: Percentile to calculate (0.0 to 1.0)

    Returns:
        Percentile value, or None for an empty list
    """
    if not sorted_vals:
        return None
    return sorted_vals[math.floor((len(sorted_vals) - 1) * p)]


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def calculate_statistics(values: list[float]) -> dict[str, Any]:
    """
    Calculate order statistics for a list of samples.

    Non-finite values (NaN, infinities) are dropped before sorting. With no
    finite samples every statistic except count is None.

    Args:
        values: List of numeric values

    Returns:
        Dictionary with count, min, p50, p95, p99, max and mean (rounded to
        the nearest integer)
    """
    finite = sorted(v for v in values if v is not None and math.isfinite(v))
    n = len(finite)

    if n == 0:
        return {"count": 0, "min": None, "p50": None, "p95": None, "p99": None, "max": None, "mean": None}

    stats: dict[str, Any] = {"count": n, "min": finite[0]}
    for label, p in PERCENTILES.items():
        stats[label] = percentile(finite, p)
    stats["max"] = finite[-1]
    stats["mean"] = round_half_up(sum(finite) / n)
    return stats


# =============================================================================
# Configuration ID Generation
# =============================================================================


def make_config_id(framework: str, memory_mb: int) -> str:
    """
    Generate unique configuration identifier.

    Example:
        >>> make_config_id("fastify", 512)
        'fastify-512'
    """
    return f"{framework}-{memory_mb}"


def output_keys(framework: str, memory_mb: int) -> tuple[str, str]:
    """Return the (url, name) deployment output keys for a configuration."""
    return f"url{framework}{memory_mb}", f"name{framework}{memory_mb}"
