# tests/unit/resilience/test_client.py
"""Tests for BackoffClient: retry classification and circuit integration."""

import pytest

from tabula.contracts.errors import CircuitOpen, QuotaExceeded, UpstreamError
from tabula.contracts.table import TableOperation, TableRequest
from tabula.core.clock import MockClock
from tabula.resilience import BackoffClient, CircuitBreaker, RetryPolicy
from tabula.substrate import InMemoryCacheBackend, InMemoryPropertyStore
from tabula.testing import TRANSPORT_FAILURE, InMemoryTable

HEADER_READ = TableRequest.get("records!A1:E1")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def breaker(clock: MockClock) -> CircuitBreaker:
    return CircuitBreaker(InMemoryCacheBackend(clock=clock), InMemoryPropertyStore(), failure_threshold=3, cool_down_ms=60_000, clock=clock)


@pytest.fixture
def client(table: InMemoryTable, breaker: CircuitBreaker, sleep: RecordingSleep) -> BackoffClient:
    return BackoffClient(table, breaker, RetryPolicy(max_attempts=3, base_delay=15.0, max_delay=60.0), sleep=sleep)


class TestSuccess:
    def test_returns_response(self, client: BackoffClient, table: InMemoryTable) -> None:
        response = client.call(HEADER_READ)
        assert response.ok
        assert response.body["values"] == [["id", "ownerKey", "isActive", "payload", "lastModified"]]
        assert table.count() == 1

    def test_success_clears_earlier_rate_limits(self, client: BackoffClient, table: InMemoryTable, breaker: CircuitBreaker) -> None:
        table.fail_next(429, times=2)
        client.call(HEADER_READ)
        assert breaker.state().is_clean


class TestRateLimits:
    def test_retries_with_linear_backoff(self, client: BackoffClient, table: InMemoryTable, sleep: RecordingSleep) -> None:
        table.fail_next(429, times=2)
        assert client.call(HEADER_READ).ok
        assert table.count() == 3
        assert sleep.delays == [15.0, 30.0]

    def test_exhaustion_raises_quota_exceeded(self, client: BackoffClient, table: InMemoryTable) -> None:
        table.fail_next(429, times=3)
        with pytest.raises(QuotaExceeded) as exc_info:
            client.call(HEADER_READ)
        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 429
        assert exc_info.value.operation == "get"

    def test_circuit_trips_after_three_and_blocks_without_network(
        self, client: BackoffClient, table: InMemoryTable, clock: MockClock
    ) -> None:
        table.fail_next(429, times=3)
        with pytest.raises(QuotaExceeded):
            client.call(HEADER_READ)
        assert table.count() == 3

        with pytest.raises(CircuitOpen):
            client.call(HEADER_READ)
        assert table.count() == 3

        clock.advance(60)
        assert client.call(HEADER_READ).ok
        assert table.count() == 4

    def test_circuit_tripped_mid_call_stops_without_backoff(self, table: InMemoryTable, clock: MockClock, sleep: RecordingSleep) -> None:
        breaker = CircuitBreaker(InMemoryCacheBackend(clock=clock), InMemoryPropertyStore(), failure_threshold=2, clock=clock)
        client = BackoffClient(table, breaker, RetryPolicy(max_attempts=5, base_delay=15.0, max_delay=60.0), sleep=sleep)
        table.fail_next(429, times=5)

        with pytest.raises(CircuitOpen):
            client.call(HEADER_READ)

        assert table.count() == 2
        assert sleep.delays == [15.0]

    def test_circuit_opened_elsewhere_fails_fast(self, client: BackoffClient, table: InMemoryTable, breaker: CircuitBreaker) -> None:
        for _ in range(3):
            breaker.record_rate_limited()
        with pytest.raises(CircuitOpen):
            client.call(HEADER_READ)
        assert table.count() == 0


class TestUpstreamErrors:
    @pytest.mark.parametrize("status", [400, 403, 404, 500, 503])
    def test_non_rate_limit_status_fails_immediately(
        self, client: BackoffClient, table: InMemoryTable, breaker: CircuitBreaker, status: int
    ) -> None:
        table.fail_next(status)
        with pytest.raises(UpstreamError) as exc_info:
            client.call(HEADER_READ)
        assert exc_info.value.status_code == status
        assert exc_info.value.detail == f"scripted status {status}"
        assert table.count() == 1
        assert breaker.state().is_clean


class TestTransportFailures:
    def test_retried_when_enabled(self, client: BackoffClient, table: InMemoryTable, breaker: CircuitBreaker) -> None:
        table.fail_next(TRANSPORT_FAILURE)
        assert client.call(HEADER_READ).ok
        assert table.count() == 2
        assert breaker.state().is_clean

    def test_exhaustion_becomes_upstream_error(self, client: BackoffClient, table: InMemoryTable) -> None:
        table.fail_next(TRANSPORT_FAILURE, times=3)
        with pytest.raises(UpstreamError) as exc_info:
            client.call(HEADER_READ)
        assert exc_info.value.status_code is None
        assert table.count() == 3

    def test_not_retried_when_disabled(self, table: InMemoryTable, breaker: CircuitBreaker, sleep: RecordingSleep) -> None:
        client = BackoffClient(table, breaker, RetryPolicy(), retry_transport_errors=False, sleep=sleep)
        table.fail_next(TRANSPORT_FAILURE)
        with pytest.raises(UpstreamError):
            client.call(HEADER_READ)
        assert table.count() == 1
        assert sleep.delays == []


class TestScriptTargeting:
    def test_failure_scripted_for_writes_skips_reads(self, client: BackoffClient, table: InMemoryTable) -> None:
        table.fail_next(429, operation=TableOperation.BATCH_UPDATE)
        assert client.call(HEADER_READ).ok
        assert table.count(TableOperation.GET) == 1


def test_close_closes_transport(client: BackoffClient, table: InMemoryTable) -> None:
    client.close()
    assert table.closed
