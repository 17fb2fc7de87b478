"""Unit tests for cold-start forcing and latency probes."""

from unittest.mock import MagicMock

import pytest
import requests
from botocore.exceptions import ClientError, WaiterError

from benchmark_orchestrator import (
    first_invoke,
    force_cold_start,
    get_init_duration_ms,
    parse_init_duration,
    wait_for_update,
)
from benchmark_utils import RetryPolicy

NO_DELAY = RetryPolicy(max_attempts=3, delay_seconds=0)
SINCE_MS = 1_700_000_000_000
REPORT_LINE = (
    "REPORT RequestId: 3f2c9a1e-0b6d-4e55-9a0e-1c2d3e4f5a6b\tDuration: 12.34 ms\t"
    "Billed Duration: 13 ms\tMemory Size: 512 MB\tMax Memory Used: 81 MB\tInit Duration: 123.45 ms"
)


def client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "FilterLogEvents")


def page(*messages: str) -> dict:
    return {"events": [{"message": m, "timestamp": SINCE_MS} for m in messages]}


class TestForceColdStart:
    def test_sets_version_and_preserves_other_variables(self, lambda_client):
        confirmed = force_cold_start(lambda_client, "bench-fastify-512", NO_DELAY)

        assert confirmed is True
        kwargs = lambda_client.update_function_configuration.call_args.kwargs
        assert kwargs["FunctionName"] == "bench-fastify-512"
        variables = kwargs["Environment"]["Variables"]
        assert variables["NODE_OPTIONS"] == "--enable-source-maps"
        assert variables["VERSION"].isdigit()

    def test_version_changes_between_calls(self, lambda_client, monkeypatch):
        import benchmark_orchestrator

        ticks = iter([1000.0, 1000.5])
        monkeypatch.setattr(benchmark_orchestrator.time, "time", lambda: next(ticks, 2000.0))

        force_cold_start(lambda_client, "fn", NO_DELAY)
        force_cold_start(lambda_client, "fn", NO_DELAY)

        versions = [
            call.kwargs["Environment"]["Variables"]["VERSION"]
            for call in lambda_client.update_function_configuration.call_args_list
        ]
        assert versions == ["1000000", "1000500"]

    def test_function_without_environment(self, lambda_client):
        lambda_client.get_function_configuration.return_value = {"LastUpdateStatus": "Successful"}

        force_cold_start(lambda_client, "fn", NO_DELAY)

        variables = lambda_client.update_function_configuration.call_args.kwargs["Environment"]["Variables"]
        assert list(variables) == ["VERSION"]


class TestWaitForUpdate:
    def test_waits_on_function_updated(self):
        client = MagicMock()

        assert wait_for_update(client, "fn", RetryPolicy(max_attempts=5, delay_seconds=2)) is True
        client.get_waiter.assert_called_once_with("function_updated")
        client.get_waiter.return_value.wait.assert_called_once_with(
            FunctionName="fn", WaiterConfig={"Delay": 2, "MaxAttempts": 5}
        )

    def test_exhausted_budget_is_tolerated(self):
        client = MagicMock()
        client.get_waiter.return_value.wait.side_effect = WaiterError(
            name="FunctionUpdated",
            reason="Max attempts exceeded",
            last_response={"LastUpdateStatus": "InProgress"},
        )

        assert wait_for_update(client, "fn", NO_DELAY) is False

    def test_failed_update_is_tolerated(self, caplog):
        client = MagicMock()
        client.get_waiter.return_value.wait.side_effect = WaiterError(
            name="FunctionUpdated",
            reason="Waiter encountered a terminal failure state",
            last_response={"LastUpdateStatus": "Failed", "LastUpdateStatusReason": "EniLimitExceeded"},
        )

        assert wait_for_update(client, "fn", NO_DELAY) is False
        assert "EniLimitExceeded" in caplog.text


class TestFirstInvoke:
    def test_measures_elapsed_milliseconds(self, session):
        elapsed = first_invoke(session, "https://abc.lambda-url.ap-southeast-1.on.aws/", timeout=5)

        assert elapsed == 250.0
        assert session.urls == ["https://abc.lambda-url.ap-southeast-1.on.aws/health"]

    def test_http_error_status_still_measured(self, session):
        session.status_code = 502

        assert first_invoke(session, "https://abc.example", timeout=5) == 250.0

    def test_request_failure_is_a_missing_sample(self):
        failing = MagicMock()
        failing.get.side_effect = requests.ConnectionError("connection reset")

        assert first_invoke(failing, "https://abc.example", timeout=5) is None


class TestParseInitDuration:
    def test_report_line(self):
        assert parse_init_duration(REPORT_LINE) == 123.45

    def test_short_line(self):
        assert parse_init_duration("REPORT ... Init Duration: 123.45 ms") == 123.45

    def test_integer_duration(self):
        assert parse_init_duration("INIT_REPORT Init Duration: 402 ms Phase: init") == 402.0

    @pytest.mark.parametrize("line", ["", "REPORT RequestId: x Duration: 2.1 ms", "Init Duration: ms", None])
    def test_no_match(self, line):
        assert parse_init_duration(line) is None


class TestGetInitDurationMs:
    def test_returns_value_from_latest_event(self, logs_client):
        paginate = logs_client.get_paginator.return_value.paginate
        paginate.return_value = [page("REPORT Init Duration: 300.00 ms", REPORT_LINE)]

        assert get_init_duration_ms(logs_client, "bench-fastify-512", NO_DELAY, SINCE_MS) == 123.45

        logs_client.get_paginator.assert_called_with("filter_log_events")
        paginate.assert_called_with(
            logGroupName="/aws/lambda/bench-fastify-512",
            startTime=SINCE_MS,
            filterPattern='"Init Duration"',
        )

    def test_retries_until_line_appears(self, logs_client):
        paginate = logs_client.get_paginator.return_value.paginate
        paginate.side_effect = [[page()], [page(REPORT_LINE)]]

        assert get_init_duration_ms(logs_client, "fn", NO_DELAY, SINCE_MS) == 123.45
        assert paginate.call_count == 2

    def test_last_page_wins(self, logs_client):
        logs_client.get_paginator.return_value.paginate.return_value = [
            page("REPORT Init Duration: 999.0 ms"),
            page(REPORT_LINE),
            page(),
        ]

        assert get_init_duration_ms(logs_client, "fn", NO_DELAY, SINCE_MS) == 123.45

    def test_missing_log_group_is_retried(self, logs_client):
        logs_client.get_paginator.return_value.paginate.side_effect = [
            client_error("ResourceNotFoundException"),
            [page(REPORT_LINE)],
        ]

        assert get_init_duration_ms(logs_client, "fn", NO_DELAY, SINCE_MS) == 123.45

    def test_other_errors_propagate(self, logs_client):
        logs_client.get_paginator.return_value.paginate.side_effect = client_error("AccessDeniedException")

        with pytest.raises(ClientError):
            get_init_duration_ms(logs_client, "fn", NO_DELAY, SINCE_MS)

    def test_exhausted_budget_returns_none(self, logs_client):
        paginate = logs_client.get_paginator.return_value.paginate
        paginate.return_value = [page()]

        assert get_init_duration_ms(logs_client, "fn", RetryPolicy(max_attempts=4, delay_seconds=0), SINCE_MS) is None
        assert paginate.call_count == 4
