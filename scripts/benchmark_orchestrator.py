#!/usr/bin/env python3
"""
Lambda Web Framework Cold-Start Benchmark Orchestrator

Measures cold-start and warm-throughput latency of the Fastify, Express and
Nest handlers deployed behind Lambda function URLs, at each configured memory
size.

Key Features:
- Endpoint discovery from CDK deployment outputs (or CloudFormation)
- Forced cold starts via environment variable updates
- Client-measured first-hit latency plus CloudWatch-reported Init Duration
- Warm-phase load via Artillery
- JSON, Markdown and chart reports per run

Execution is strictly sequential: concurrent invocations would spin up extra
execution environments and blur the cold-start signal.
"""

import argparse
import json
import logging
import re
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Callable

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import ClientError, WaiterError
from dotenv import load_dotenv

from analyze_results import write_reports
from benchmark_utils import (
    FRAMEWORKS,
    BenchmarkConfig,
    BenchmarkResult,
    ColdStartSample,
    FunctionMeta,
    RetryPolicy,
    StackOutputError,
    WarmSummary,
    output_keys,
)
from load_test import run_artillery

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
)
log = logging.getLogger(__name__)

INIT_DURATION_RE = re.compile(r"Init Duration:\s*(\d+(?:\.\d+)?)\s*ms", re.IGNORECASE)
INIT_DURATION_FILTER = '"Init Duration"'
HEALTH_PATH = "/health"
VERSION_ENV_VAR = "VERSION"


def make_boto_config(region: str) -> Config:
    return Config(
        region_name=region,
        retries={"max_attempts": 10, "mode": "standard"},
        read_timeout=60,
        connect_timeout=20,
    )


def create_clients(region: str) -> dict[str, Any]:
    """Create the Lambda, CloudWatch Logs and CloudFormation clients for a region."""
    config = make_boto_config(region)
    return {
        "lambda": boto3.client("lambda", config=config),
        "logs": boto3.client("logs", config=config),
        "cloudformation": boto3.client("cloudformation", config=config),
    }


# =============================================================================
# Stack Outputs (Read State)
# =============================================================================


def deploy_stack(infra_dir: str | Path, outputs_file: str) -> None:
    """
    Deploy the benchmark stack and write its outputs file.

    Deployment itself is delegated to the CDK CLI; a non-zero exit aborts the run.

    Raises:
        subprocess.CalledProcessError: If the deploy command fails
    """
    log.info(f"Deploying stack from {infra_dir}/ (outputs -> {outputs_file})")
    subprocess.run(
        ["npx", "cdk", "deploy", "--outputs-file", outputs_file, "--require-approval", "never"],
        cwd=infra_dir,
        stdin=subprocess.DEVNULL,
        check=True,
    )


def read_outputs_file(path: str | Path, stack_name: str) -> dict[str, str]:
    """
    Load one stack's outputs from a CDK --outputs-file document.

    Raises:
        StackOutputError: If the document has no entry for the stack
    """
    with open(path) as f:
        document = json.load(f)

    if stack_name not in document:
        raise StackOutputError(
            f"Stack {stack_name} not found in {path}. Got stacks: {', '.join(document)}"
        )
    return document[stack_name]


def fetch_stack_outputs(cfn_client, stack_name: str) -> dict[str, str]:
    """Fetch CloudFormation stack outputs as a key/value map."""
    response = cfn_client.describe_stacks(StackName=stack_name)
    if not response["Stacks"]:
        raise StackOutputError(f"Stack {stack_name} not found")

    outputs = {}
    for output in response["Stacks"][0].get("Outputs", []):
        outputs[output["OutputKey"]] = output["OutputValue"]
    return outputs


def build_function_metas(
    outputs: dict[str, str], frameworks: list[str], memory_sizes: list[int]
) -> list[FunctionMeta]:
    """
    Resolve one FunctionMeta per (framework, memory) combination.

    Outputs are keyed url<framework><memory> and name<framework><memory>.
    Any missing key is fatal: a partial benchmark matrix is never returned.

    Raises:
        StackOutputError: If a combination's URL or function name is absent
    """
    metas = []
    for memory_mb in memory_sizes:
        for framework in frameworks:
            url_key, name_key = output_keys(framework, memory_mb)
            url = outputs.get(url_key)
            name = outputs.get(name_key)
            if not url or not name:
                raise StackOutputError(
                    f"Missing outputs for {framework}@{memory_mb}. Got keys: {', '.join(outputs)}"
                )
            metas.append(FunctionMeta(framework=framework, memory_mb=memory_mb, url=url, name=name))
    return metas


def get_stack_outputs(
    config: BenchmarkConfig, source: str = "file", deploy: bool = True, cfn_client=None
) -> list[FunctionMeta]:
    """
    Discover deployed functions for every configured combination.

    Args:
        config: Benchmark configuration (stack name, frameworks, memory sizes)
        source: "file" to read the CDK outputs file, "cloudformation" to query the stack
        deploy: Run the CDK deploy before reading outputs
        cfn_client: CloudFormation client, required for the "cloudformation" source
    """
    if deploy:
        deploy_stack(config.infra_dir, config.outputs_file)

    if source == "cloudformation":
        log.info(f"Reading outputs of stack {config.stack_name} from CloudFormation")
        outputs = fetch_stack_outputs(cfn_client, config.stack_name)
    else:
        outputs_path = Path(config.infra_dir) / config.outputs_file
        log.info(f"Reading outputs of stack {config.stack_name} from {outputs_path}")
        outputs = read_outputs_file(outputs_path, config.stack_name)

    metas = build_function_metas(outputs, config.frameworks, config.memory_sizes)
    log.info(f"Found {len(metas)} functions")
    return metas


# =============================================================================
# AWS Mutation Functions (Modify Resources)
# =============================================================================


def wait_for_update(lambda_client, function_name: str, retry: RetryPolicy) -> bool:
    """
    Wait until the function's last configuration update has been applied.

    Best-effort: a failed update or an exhausted budget is logged and the
    caller proceeds with whatever state the function is in.

    Returns:
        True if Lambda reported the update as successful
    """
    waiter = lambda_client.get_waiter("function_updated")
    try:
        waiter.wait(
            FunctionName=function_name,
            WaiterConfig={"Delay": retry.delay_seconds, "MaxAttempts": retry.max_attempts},
        )
    except WaiterError as e:
        reason = (e.last_response or {}).get("LastUpdateStatusReason") or e
        log.warning(f"  Configuration update for {function_name} not confirmed ({reason}); continuing")
        return False
    return True


def force_cold_start(lambda_client, function_name: str, retry: RetryPolicy) -> bool:
    """
    Force a cold start by updating Lambda function configuration.

    Setting VERSION to a fresh value changes the function configuration, so
    Lambda tears down warm execution environments. Other environment
    variables are preserved.
    """
    current_config = lambda_client.get_function_configuration(FunctionName=function_name)
    variables = dict(current_config.get("Environment", {}).get("Variables", {}))
    variables[VERSION_ENV_VAR] = str(int(time.time() * 1000))

    lambda_client.update_function_configuration(
        FunctionName=function_name, Environment={"Variables": variables}
    )
    return wait_for_update(lambda_client, function_name, retry)


# =============================================================================
# Latency Probes
# =============================================================================


def first_invoke(session: requests.Session, url: str, timeout: float) -> float | None:
    """
    Time one request to the health endpoint, including any cold-start overhead.

    No retry: a failed request is a missing sample, not a fatal error.

    Returns:
        Elapsed milliseconds, or None if the request failed
    """
    target = url.rstrip("/") + HEALTH_PATH
    t0 = time.perf_counter()
    try:
        response = session.get(target, timeout=timeout)
    except requests.RequestException as e:
        log.warning(f"  First hit to {target} failed: {e}")
        return None
    elapsed_ms = (time.perf_counter() - t0) * 1000

    if response.status_code >= 400:
        log.warning(f"  First hit to {target} returned HTTP {response.status_code}")

    return round(elapsed_ms, 2)


def parse_init_duration(line: str) -> float | None:
    """
    Extract Init Duration from a Lambda REPORT line.

    Example:
        >>> parse_init_duration("REPORT RequestId: abc Init Duration: 123.45 ms")
        123.45
    """
    match = INIT_DURATION_RE.search(line or "")
    if not match:
        return None
    return float(match.group(1))


def _latest_init_line(logs_client, log_group: str, since_ms: int) -> str:
    """Return the most recent Init Duration log message logged at or after since_ms."""
    message = ""
    paginator = logs_client.get_paginator("filter_log_events")
    for page in paginator.paginate(
        logGroupName=log_group,
        startTime=since_ms,
        filterPattern=INIT_DURATION_FILTER,
    ):
        events = page.get("events", [])
        if events:
            message = events[-1].get("message", "")
    return message


def get_init_duration_ms(
    logs_client, function_name: str, retry: RetryPolicy, since_ms: int
) -> float | None:
    """
    Poll CloudWatch Logs for the platform-reported Init Duration.

    Only events timestamped at or after since_ms (epoch milliseconds) are
    considered. Log ingestion is asynchronous, so the query is retried with a
    fixed delay. A log group that does not exist yet is retried like an empty
    result; any other service error propagates.

    Returns:
        Init duration in milliseconds, or None if the budget is exhausted
    """
    log_group = f"/aws/lambda/{function_name}"

    for attempt in range(retry.max_attempts):
        try:
            init_ms = parse_init_duration(_latest_init_line(logs_client, log_group, since_ms))
            if init_ms is not None:
                return init_ms
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise

        if attempt < retry.max_attempts - 1:
            time.sleep(retry.delay_seconds)

    return None


# =============================================================================
# Orchestration Functions (High-Level Coordination)
# =============================================================================


def measure_cold_start(
    meta: FunctionMeta,
    config: BenchmarkConfig,
    lambda_client,
    logs_client,
    session: requests.Session,
) -> ColdStartSample:
    """Force one cold start and measure first-hit latency and Init Duration."""
    # REPORT lines older than this belong to an earlier cold start
    since_ms = int((time.time() - config.clock_skew_margin) * 1000)
    force_cold_start(lambda_client, meta.name, config.update_retry)

    # The first invocation creates the log group and emits the REPORT line
    first_ms = first_invoke(session, meta.url, config.http_timeout)

    time.sleep(config.log_ingest_delay)
    init_ms = get_init_duration_ms(logs_client, meta.name, config.init_retry, since_ms)

    return ColdStartSample(init_duration_ms=init_ms, first_response_ms=first_ms)


def benchmark_function(
    meta: FunctionMeta,
    config: BenchmarkConfig,
    lambda_client,
    logs_client,
    session: requests.Session,
    load_runner: Callable[..., WarmSummary] = run_artillery,
) -> BenchmarkResult:
    """
    Run complete benchmark for a single function at its memory configuration.

    Forces config.cold_start_runs cold starts one after another, then runs a
    single warm-load pass.
    """
    log.info("")
    log.info(f"=== Benchmark {meta.framework} @ {meta.memory_mb}MB ===")

    result = BenchmarkResult(framework=meta.framework, memory_mb=meta.memory_mb)

    for i in range(config.cold_start_runs):
        sample = measure_cold_start(meta, config, lambda_client, logs_client, session)
        result.samples.append(sample)
        log.info(
            f"  Run {i + 1} -> init ~{sample.init_duration_ms}ms, first ~{sample.first_response_ms}ms"
        )
        time.sleep(config.cooldown)

    if config.run_warm:
        result.warm_summary = load_runner(
            meta.url, config.warm_duration_sec, config.arrival_rate, config.template_path
        )
    else:
        log.info("  Warm run skipped")

    log.info(f"  {meta.config_id} - ✓ Complete")
    return result


def run_benchmark(
    metas: list[FunctionMeta],
    config: BenchmarkConfig,
    lambda_client,
    logs_client,
    session: requests.Session,
    load_runner: Callable[..., WarmSummary] = run_artillery,
) -> list[BenchmarkResult]:
    """
    Benchmark every configuration in order and return the collected results.

    Returns:
        One BenchmarkResult per FunctionMeta, in input order
    """
    log.info("=" * 70)
    log.info("Lambda Web Framework Cold-Start Benchmark")
    log.info("=" * 70)
    log.info(f"Region: {config.region}")
    log.info(f"Configurations: {', '.join(m.config_id for m in metas)}")
    log.info(f"Cold starts per config: {config.cold_start_runs}")
    log.info(f"Warm phase: {config.warm_duration_sec}s @ {config.arrival_rate}/s")

    results: list[BenchmarkResult] = []
    start_time = time.time()

    for index, meta in enumerate(metas, start=1):
        results.append(
            benchmark_function(meta, config, lambda_client, logs_client, session, load_runner)
        )
        elapsed = time.time() - start_time
        log.info(f"Progress: {index}/{len(metas)} | Elapsed: {elapsed / 60:.1f}min")

    return results


# =============================================================================
# Entry Point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Lambda web framework cold-start and warm-throughput benchmark",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment (overridden by flags):
  AWS_REGION, COLD_START_RUNS, WARM_DURATION_SEC, ARRIVAL_RATE, MEM_SIZES

Examples:
  # Deploy, then benchmark every framework at 512 and 1024 MB
  python benchmark_orchestrator.py

  # Reuse an existing deployment, quick pass
  python benchmark_orchestrator.py --skip-deploy --runs 2 --duration 30

  # Only Fastify at 1024 MB, cold starts only
  python benchmark_orchestrator.py --framework fastify --mem 1024 --skip-warm
        """,
    )
    parser.add_argument("--region", help="AWS region (default: $AWS_REGION or ap-southeast-1)")
    parser.add_argument("--runs", type=int, dest="cold_start_runs", help="Cold starts per configuration")
    parser.add_argument("--duration", type=int, dest="warm_duration_sec", help="Warm phase duration in seconds")
    parser.add_argument("--arrival-rate", type=int, dest="arrival_rate", help="Warm phase arrivals per second")
    parser.add_argument(
        "--mem",
        type=int,
        nargs="+",
        dest="memory_sizes",
        help="Memory sizes to test (e.g., --mem 512 1024)",
    )
    parser.add_argument(
        "--framework",
        nargs="+",
        dest="frameworks",
        choices=FRAMEWORKS,
        help="Restrict to specific frameworks",
    )
    parser.add_argument(
        "--skip-deploy",
        action="store_true",
        help="Read existing deployment outputs instead of running cdk deploy",
    )
    parser.add_argument(
        "--outputs-source",
        choices=["file", "cloudformation"],
        default="file",
        help="Where to read stack outputs from (default: file)",
    )
    parser.add_argument("--skip-warm", action="store_true", help="Skip the Artillery warm phase")
    parser.add_argument("--reports-dir", help="Directory for report files (default: reports)")
    parser.add_argument("--template", dest="template_path", help="Artillery template path")
    return parser


def apply_args(config: BenchmarkConfig, args) -> BenchmarkConfig:
    """Override environment-derived configuration with command-line flags."""
    for name in (
        "region",
        "cold_start_runs",
        "warm_duration_sec",
        "arrival_rate",
        "memory_sizes",
        "frameworks",
        "reports_dir",
        "template_path",
    ):
        value = getattr(args, name, None)
        if value is not None:
            setattr(config, name, value)
    if args.skip_warm:
        config.run_warm = False
    return config


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = apply_args(BenchmarkConfig.from_env(), args)
        clients = create_clients(config.region)
        metas = get_stack_outputs(
            config,
            source=args.outputs_source,
            deploy=not args.skip_deploy,
            cfn_client=clients["cloudformation"],
        )
        with requests.Session() as session:
            results = run_benchmark(metas, config, clients["lambda"], clients["logs"], session)
        paths = write_reports(results, config)
    except KeyboardInterrupt:
        log.warning("Benchmark aborted by user (KeyboardInterrupt)")
        return 130
    except Exception:
        log.exception("Benchmark failed")
        return 1

    log.info("")
    log.info("=" * 70)
    log.info("Benchmark complete!")
    log.info(f"JSON:  {paths['json']}")
    log.info(f"MD:    {paths['markdown']}")
    if paths.get("chart"):
        log.info(f"Chart: {paths['chart']}")
    log.info("=" * 70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
