"""
Shared pytest fixtures for the benchmark harness tests.

Provides:
- Zero-delay benchmark configuration
- MagicMock stand-ins for the Lambda and CloudWatch Logs clients
- A fake clock and HTTP session for deterministic first-hit timing
- A CDK outputs file for one or more framework/memory combinations
"""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from benchmark_utils import BenchmarkConfig, RetryPolicy


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSession:
    """HTTP session whose GET takes a fixed amount of fake-clock time."""

    def __init__(self, clock: FakeClock, delay: float, status_code: int = 200):
        self.clock = clock
        self.delay = delay
        self.status_code = status_code
        self.urls: list[str] = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def get(self, url, timeout=None):
        self.urls.append(url)
        self.clock.advance(self.delay)
        response = MagicMock()
        response.status_code = self.status_code
        response.content = b"ok"
        return response


@pytest.fixture
def fast_config(tmp_path) -> BenchmarkConfig:
    """Benchmark configuration with every delay set to zero."""
    return BenchmarkConfig(
        cold_start_runs=1,
        memory_sizes=[512],
        frameworks=["fastify"],
        infra_dir=str(tmp_path / "infra"),
        reports_dir=str(tmp_path / "reports"),
        update_retry=RetryPolicy(max_attempts=3, delay_seconds=0),
        init_retry=RetryPolicy(max_attempts=3, delay_seconds=0),
        log_ingest_delay=0,
        cooldown=0,
    )


@pytest.fixture
def lambda_client() -> MagicMock:
    client = MagicMock()
    client.get_function_configuration.return_value = {
        "FunctionName": "bench-fastify-512",
        "Environment": {"Variables": {"NODE_OPTIONS": "--enable-source-maps"}},
        "LastUpdateStatus": "Successful",
    }
    return client


@pytest.fixture
def logs_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def clock(monkeypatch) -> FakeClock:
    import benchmark_orchestrator

    fake = FakeClock()
    monkeypatch.setattr(benchmark_orchestrator.time, "perf_counter", fake)
    return fake


@pytest.fixture
def wall_clock(monkeypatch) -> FakeClock:
    """Epoch clock where sleeping advances time instead of blocking."""
    import benchmark_orchestrator

    fake = FakeClock(start=1_700_000_000.0)
    monkeypatch.setattr(benchmark_orchestrator.time, "time", fake)
    monkeypatch.setattr(benchmark_orchestrator.time, "sleep", fake.advance)
    return fake


@pytest.fixture
def stack_outputs() -> dict[str, str]:
    return {
        "urlfastify512": "https://fastify512.lambda-url.ap-southeast-1.on.aws/",
        "namefastify512": "LambdaBenchStack-fastify512",
        "urlexpress512": "https://express512.lambda-url.ap-southeast-1.on.aws/",
        "nameexpress512": "LambdaBenchStack-express512",
        "urlnest512": "https://nest512.lambda-url.ap-southeast-1.on.aws/",
        "namenest512": "LambdaBenchStack-nest512",
        "urlfastify1024": "https://fastify1024.lambda-url.ap-southeast-1.on.aws/",
        "namefastify1024": "LambdaBenchStack-fastify1024",
        "urlexpress1024": "https://express1024.lambda-url.ap-southeast-1.on.aws/",
        "nameexpress1024": "LambdaBenchStack-express1024",
        "urlnest1024": "https://nest1024.lambda-url.ap-southeast-1.on.aws/",
        "namenest1024": "LambdaBenchStack-nest1024",
    }


@pytest.fixture
def outputs_file(fast_config, stack_outputs):
    """Write a CDK outputs document where fast_config expects it."""
    path = Path(fast_config.infra_dir) / fast_config.outputs_file
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({fast_config.stack_name: stack_outputs}))
    return path


@pytest.fixture
def session(clock) -> FakeSession:
    """HTTP session whose requests take 250 ms of fake-clock time."""
    return FakeSession(clock, delay=0.25)
